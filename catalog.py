"""Read-only catalog and credential snapshot."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

import httpx

from config import AppConfig
from errors import CatalogUnavailableError
from models import CallerIdentity, ModelCatalogEntry, ProviderCredential

log = logging.getLogger("model_gateway")


def _model_refs(items: Any) -> List[str]:
    """A virtual key scope entry may be a name, {name} or {id}."""
    out: List[str] = []
    if not isinstance(items, list):
        return out
    for it in items:
        if isinstance(it, str) and it:
            out.append(it)
        elif isinstance(it, dict):
            for k in ("name", "id"):
                v = it.get(k)
                if isinstance(v, str) and v:
                    out.append(v)
    return out


@dataclass(frozen=True)
class VirtualKey:
    email: str
    models: Tuple[str, ...]
    disabled: bool = False


@dataclass(frozen=True)
class CatalogSnapshot:
    """Immutable for the duration of one gateway request."""

    callers: Mapping[str, str]
    virtual_keys: Tuple[VirtualKey, ...]
    providers: Mapping[str, ProviderCredential]
    models: Tuple[ModelCatalogEntry, ...]

    @classmethod
    def from_dict(cls, data: Any) -> CatalogSnapshot:
        if not isinstance(data, dict):
            raise CatalogUnavailableError("Catalog snapshot is not a JSON object")

        callers: Dict[str, str] = {}
        for c in data.get("callers") or []:
            if isinstance(c, dict) and c.get("token") and c.get("email"):
                callers[str(c["token"])] = str(c["email"])

        vkeys: List[VirtualKey] = []
        for vk in data.get("virtual_keys") or []:
            if not isinstance(vk, dict) or not vk.get("email"):
                continue
            vkeys.append(
                VirtualKey(
                    email=str(vk["email"]).strip().lower(),
                    models=tuple(_model_refs(vk.get("models"))),
                    disabled=bool(vk.get("disabled", False)),
                )
            )

        providers: Dict[str, ProviderCredential] = {}
        for p in data.get("providers") or []:
            if not isinstance(p, dict):
                continue
            cred = ProviderCredential.from_dict(p)
            if cred is not None:
                providers[cred.provider] = cred

        models: List[ModelCatalogEntry] = []
        for m in data.get("models") or []:
            if not isinstance(m, dict):
                continue
            entry = ModelCatalogEntry.from_dict(m)
            if entry is not None:
                models.append(entry)

        return cls(
            callers=callers,
            virtual_keys=tuple(vkeys),
            providers=providers,
            models=tuple(models),
        )

    def caller_email(self, token: str) -> Optional[str]:
        return self.callers.get(token)

    def entitlements(self, email: str) -> FrozenSet[str]:
        """Union of model references of the caller's enabled virtual keys."""
        e = (email or "").strip().lower()
        refs: set = set()
        for vk in self.virtual_keys:
            if vk.email == e and not vk.disabled:
                refs.update(vk.models)
        return frozenset(refs)

    def models_for(self, identity: CallerIdentity) -> List[ModelCatalogEntry]:
        """Catalog entries the caller is entitled to, in catalog order."""
        refs = identity.entitled_models
        return [m for m in self.models if m.name in refs or (m.id and m.id in refs)]

    def find_model(self, identity: CallerIdentity, name: str) -> Optional[ModelCatalogEntry]:
        for m in self.models_for(identity):
            if m.name == name:
                return m
        return None

    def provider(self, name: str) -> Optional[ProviderCredential]:
        return self.providers.get((name or "").strip().lower())


class CatalogStore:
    """Loads the snapshot once per gateway request, from a URL or a file."""

    def __init__(
        self,
        config: AppConfig,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        self._config = config
        self._client_factory = client_factory

    async def snapshot(self) -> CatalogSnapshot:
        t0 = time.time()
        if self._config.catalog_url:
            data = await self._fetch_url()
            source = self._config.catalog_url
        else:
            data = await asyncio.to_thread(self._read_file, Path(self._config.catalog_path))
            source = self._config.catalog_path
        snap = CatalogSnapshot.from_dict(data)
        log.debug(
            "Catalog loaded source=%s models=%d providers=%d ms=%.1f",
            source,
            len(snap.models),
            len(snap.providers),
            (time.time() - t0) * 1000,
        )
        return snap

    @staticmethod
    def _read_file(path: Path) -> Any:
        try:
            raw = path.read_bytes()
        except OSError as e:
            log.error("Catalog file unreadable path=%s err=%s", path, e)
            raise CatalogUnavailableError("Catalog unavailable", details=f"cannot read {path.name}") from e
        try:
            return json.loads(raw)
        except ValueError as e:
            log.error("Catalog file is not valid JSON path=%s err=%s", path, e)
            raise CatalogUnavailableError("Catalog unavailable", details="catalog is not valid JSON") from e

    async def _fetch_url(self) -> Any:
        headers = {"Accept": "application/json", "User-Agent": self._config.user_agent}
        if self._config.catalog_token:
            headers["Authorization"] = f"Bearer {self._config.catalog_token}"
        client = (
            self._client_factory()
            if self._client_factory is not None
            else httpx.AsyncClient(timeout=httpx.Timeout(self._config.connect_timeout_s))
        )
        try:
            r = await client.get(self._config.catalog_url, headers=headers)
        except httpx.HTTPError as e:
            log.error("Catalog fetch failed url=%s err=%r", self._config.catalog_url, e)
            raise CatalogUnavailableError("Catalog unavailable", details="catalog endpoint unreachable") from e
        finally:
            await client.aclose()

        if r.status_code != 200:
            log.error("Catalog fetch failed url=%s status=%s", self._config.catalog_url, r.status_code)
            raise CatalogUnavailableError(
                "Catalog unavailable", details=f"catalog endpoint returned {r.status_code}"
            )
        try:
            return r.json()
        except ValueError as e:
            raise CatalogUnavailableError("Catalog unavailable", details="catalog is not valid JSON") from e
