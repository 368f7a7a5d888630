"""Static map from protocol identifiers to execution adapters."""

from __future__ import annotations

import logging
from typing import Dict, Iterator, Mapping, Optional, Tuple, Union

from .base import AdapterUnavailable, ProtocolExecutionAdapter

logger = logging.getLogger(__name__)

RegistryKey = Union[str, Tuple[str, Optional[str]]]


def _normalise(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


class AdapterRegistry:
    """Resolve adapters by ``(protocol_id, chain)``.

    Lookup order is the exact pair, then the protocol-wide entry, then the
    default adapter. An adapter that reports it does not support the chain is
    skipped.
    """

    def __init__(
        self,
        adapters: Optional[Mapping[RegistryKey, ProtocolExecutionAdapter]] = None,
        *,
        default: Optional[ProtocolExecutionAdapter] = None,
    ) -> None:
        self._adapters: Dict[Tuple[Optional[str], Optional[str]], ProtocolExecutionAdapter] = {}
        self._default = default
        for key, adapter in (adapters or {}).items():
            if isinstance(key, tuple):
                protocol_id, chain = key
            else:
                protocol_id, chain = key, None
            self.register(protocol_id, adapter, chain=chain)

    def register(
        self,
        protocol_id: str,
        adapter: ProtocolExecutionAdapter,
        *,
        chain: Optional[str] = None,
    ) -> None:
        self._adapters[(_normalise(protocol_id), _normalise(chain))] = adapter

    def resolve(self, protocol_id: Optional[str], chain: Optional[str] = None) -> Optional[ProtocolExecutionAdapter]:
        protocol_key = _normalise(protocol_id)
        chain_key = _normalise(chain)
        candidates = []
        if protocol_key is not None:
            if chain_key is not None:
                candidates.append(self._adapters.get((protocol_key, chain_key)))
            candidates.append(self._adapters.get((protocol_key, None)))
        candidates.append(self._default)
        for adapter in candidates:
            if adapter is not None and adapter.supports_chain(chain):
                return adapter
        logger.debug("No adapter registered", extra={"protocol": protocol_id, "chain": chain})
        return None

    def require(self, protocol_id: Optional[str], chain: Optional[str] = None) -> ProtocolExecutionAdapter:
        adapter = self.resolve(protocol_id, chain)
        if adapter is None:
            raise AdapterUnavailable(protocol_id, chain)
        return adapter

    def __iter__(self) -> Iterator[ProtocolExecutionAdapter]:
        seen = []
        for adapter in list(self._adapters.values()) + [self._default]:
            if adapter is not None and all(adapter is not other for other in seen):
                seen.append(adapter)
        return iter(seen)

    def __len__(self) -> int:
        return len(self._adapters) + (1 if self._default is not None else 0)
