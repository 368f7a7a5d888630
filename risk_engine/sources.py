"""Lookups for protocol metadata consumed by the scoring engine."""

from __future__ import annotations

import abc
from typing import Iterable, Mapping, Optional, Union

from .types import ProtocolProfile


class MetadataSource(abc.ABC):
    @abc.abstractmethod
    async def get_protocol(self, protocol_id: str) -> Optional[ProtocolProfile]:
        """Return the profile for ``protocol_id`` or ``None`` when unknown."""


class StaticMetadataSource(MetadataSource):
    """Serve protocol profiles from memory, e.g. loaded from a JSON fixture."""

    def __init__(self, protocols: Iterable[Union[ProtocolProfile, Mapping]] = ()) -> None:
        self._protocols = {}
        for item in protocols:
            self.add(item)

    def add(self, protocol: Union[ProtocolProfile, Mapping]) -> ProtocolProfile:
        profile = protocol if isinstance(protocol, ProtocolProfile) else ProtocolProfile.from_mapping(protocol)
        self._protocols[profile.id] = profile
        return profile

    async def get_protocol(self, protocol_id: str) -> Optional[ProtocolProfile]:
        return self._protocols.get(protocol_id)

    def __iter__(self):
        return iter(self._protocols.values())
