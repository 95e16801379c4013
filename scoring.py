"""Model scoring and provider-diverse selection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from models import ModelCatalogEntry, ModelKind, ScoredModel

log = logging.getLogger("model_gateway")

BASE_SCORE = 50
IMAGE_SCORE = 100
DEFAULT_THRESHOLD = 30

OCR_MARKERS = ("ocr", "op3", "olmocr", "paddleocr")
IMAGE_GENERATION_PATH = "/images/generations"

NO_IMAGE_MODELS_MESSAGE = (
    "No image generation models are available for your account. "
    "Please contact your administrator to enable image generation capabilities."
)


class Intent(str, Enum):
    CHAT = "chat"
    CODE = "code"
    IMAGE = "image"
    ANALYSIS = "analysis"

    @classmethod
    def parse(cls, value: str) -> Optional[Intent]:
        v = (value or "").strip().lower()
        for intent in cls:
            if intent.value == v:
                return intent
        return None


@dataclass(frozen=True)
class ModelTraits:
    ocr: bool = False
    embedding: bool = False
    tts: bool = False
    image_generation: bool = False
    vision: bool = False

    @property
    def specialized(self) -> bool:
        return self.ocr or self.embedding or self.tts or self.image_generation


def classify(entry: ModelCatalogEntry) -> ModelTraits:
    """Combine the catalog kind tag with name/mode patterns."""
    name = entry.name.lower()
    mode = entry.mode.lower()
    kind = entry.kind
    path = (entry.api_path or "").lower()
    return ModelTraits(
        ocr=kind == ModelKind.OCR or any(m in name or m in mode for m in OCR_MARKERS),
        embedding=kind == ModelKind.EMBEDDING or "embedding" in name,
        tts=kind == ModelKind.TTS or "whisper" in name or "tts" in name,
        image_generation=(
            kind == ModelKind.IMAGE_GENERATION or IMAGE_GENERATION_PATH in path or "dall-e" in name
        ),
        vision=kind == ModelKind.VISION or "vision" in name,
    )


def is_image_generation(entry: ModelCatalogEntry) -> bool:
    return classify(entry).image_generation


def _family_boost(name: str, intent: Intent) -> int:
    claude = "claude" in name
    gpt4 = "gpt-4" in name or "gpt4" in name
    gpt35 = "gpt-3.5" in name or "gpt35" in name
    sonnet = "sonnet" in name
    opus = "opus" in name
    haiku = "haiku" in name
    plain_claude = claude and not (sonnet or opus or haiku)

    boost = 0
    if intent == Intent.CODE:
        if sonnet:
            boost += 50
        if opus:
            boost += 45
        if "gpt-4o" in name:
            boost += 50
        if gpt4 and "4o" not in name:
            boost += 40
        if plain_claude:
            boost += 35
        if haiku:
            boost += 30
        if gpt35:
            boost += 25
        if "code" in name:
            boost += 40
    elif intent == Intent.ANALYSIS:
        if opus:
            boost += 40
        if sonnet:
            boost += 35
        if gpt4:
            boost += 30
    elif intent == Intent.IMAGE:
        if "gpt-4o" in name:
            boost += 40
    else:
        if "gpt-4o" in name or "chatgpt-4o" in name:
            boost += 45
        if sonnet:
            boost += 40
        if opus:
            boost += 35
        if haiku:
            boost += 30
        if plain_claude:
            boost += 25
        if gpt4 and "4o" not in name:
            boost += 30
        if gpt35:
            boost += 20
        if "turbo" in name:
            boost += 15
        if "latest" in name:
            boost += 10

    if "4.5" in name:
        boost += 10
    if "3.5" in name and claude:
        boost += 8
    return boost


def _context_boost(entry: ModelCatalogEntry, intent: Intent) -> int:
    ctx = entry.context_length
    if intent == Intent.CODE:
        return 10 if ctx > 32000 else 0
    if intent == Intent.ANALYSIS:
        if ctx > 100000:
            return 50
        if ctx > 32000:
            return 35
        if ctx > 16000:
            return 20
    return 0


def _penalty(traits: ModelTraits, intent: Intent) -> int:
    if intent == Intent.CODE:
        return (
            (80 if traits.ocr else 0)
            + (80 if traits.embedding else 0)
            + (80 if traits.tts else 0)
            + (60 if traits.image_generation else 0)
        )
    if intent == Intent.ANALYSIS:
        return (
            (40 if traits.ocr else 0)
            + (60 if traits.embedding else 0)
            + (60 if traits.tts else 0)
            + (40 if traits.image_generation else 0)
        )
    if intent == Intent.IMAGE:
        return (50 if traits.embedding else 0) + (50 if traits.tts else 0)
    return (
        (60 if traits.ocr else 0)
        + (70 if traits.embedding else 0)
        + (70 if traits.tts else 0)
        + (40 if traits.image_generation else 0)
    )


def score_model(entry: ModelCatalogEntry, intent: Intent) -> int:
    """
    Heuristic fitness of a model for an intent, never below 0.

    Specialized models (OCR, embedding, TTS, image generation) only receive
    boosts for the intent they serve (image/vision); for every other intent
    they can only lose points, so they always rank below a general chat model.
    """
    traits = classify(entry)
    name = entry.name.lower()
    score = BASE_SCORE - _penalty(traits, intent)

    if intent == Intent.IMAGE:
        if traits.image_generation:
            score += 60
        if "dall-e" in name:
            score += 70
        if traits.vision:
            score += 50
        if traits.ocr:
            score += 20
        if not traits.specialized:
            score += _family_boost(name, intent)
    elif not traits.specialized:
        score += _family_boost(name, intent) + _context_boost(entry, intent)

    return max(0, score)


@dataclass
class SelectionResult:
    models: List[ScoredModel] = field(default_factory=list)
    total_available: int = 0
    message: Optional[str] = None


def _provider_key(entry: ModelCatalogEntry) -> str:
    return (entry.provider or "unknown").lower()


def _diverse_fill(
    ranked: List[ScoredModel], limit: int, threshold: Optional[int]
) -> List[ScoredModel]:
    selected: List[ScoredModel] = []
    picked: set = set()
    seen_providers: set = set()

    def acceptable(sm: ScoredModel) -> bool:
        return threshold is None or sm.score > threshold

    # pass 1: best model per provider
    for i, sm in enumerate(ranked):
        if len(selected) >= limit:
            break
        p = _provider_key(sm.entry)
        if p not in seen_providers and acceptable(sm):
            seen_providers.add(p)
            picked.add(i)
            selected.append(sm)

    # pass 2: best remaining, provider repeats allowed
    for i, sm in enumerate(ranked):
        if len(selected) >= limit:
            break
        if i not in picked and acceptable(sm):
            picked.add(i)
            selected.append(sm)

    # pass 3: anything left, regardless of score
    for i, sm in enumerate(ranked):
        if len(selected) >= limit:
            break
        if i not in picked:
            picked.add(i)
            selected.append(sm)
            log.debug("Fallback selection model=%s score=%d", sm.entry.name, sm.score)

    return selected


def select_diverse(
    catalog: Iterable[ModelCatalogEntry],
    intent: Intent,
    limit: int,
    threshold: int = DEFAULT_THRESHOLD,
) -> SelectionResult:
    """
    Pick up to `limit` models, preferring provider diversity then score.

    Ties keep catalog order. The image intent only ever surfaces
    image-generation models; with none available the result carries the
    `no_image_models` message and an empty list.
    """
    available = [m for m in catalog if m.available]
    if limit <= 0:
        return SelectionResult(total_available=len(available))

    if intent == Intent.IMAGE:
        image_models = [m for m in available if is_image_generation(m)]
        if not image_models:
            log.info("No image generation models among %d available", len(available))
            return SelectionResult(total_available=0, message="no_image_models")
        ranked = [ScoredModel(entry=m, score=IMAGE_SCORE) for m in image_models]
        return SelectionResult(
            models=_diverse_fill(ranked, limit, threshold=None),
            total_available=len(image_models),
        )

    ranked = sorted(
        (ScoredModel(entry=m, score=score_model(m, intent)) for m in available),
        key=lambda sm: -sm.score,
    )
    if log.isEnabledFor(logging.DEBUG):
        for sm in ranked[:10]:
            log.debug(
                "Score intent=%s model=%s provider=%s kind=%s score=%d",
                intent.value,
                sm.entry.name,
                sm.entry.provider,
                sm.entry.kind.value,
                sm.score,
            )
    return SelectionResult(
        models=_diverse_fill(ranked, limit, threshold=threshold),
        total_available=len(available),
    )
