"""Resolver profile directory."""

import logging
from decimal import Decimal
from typing import Iterable, Iterator, Optional

from pydantic import TypeAdapter

from fusioncross.crypto import open_credentials
from fusioncross.resolvers.base import ResolverProfile

logger = logging.getLogger(__name__)

_profile_list = TypeAdapter(list[ResolverProfile])


def default_profiles(chain_a: str = "ethereum", chain_b: str = "stellar") -> list[ResolverProfile]:
    """The three stock resolvers used when no profiles are configured."""
    return [
        ResolverProfile(
            id="resolver1",
            name="Resolver Alpha",
            min_fill_percent=Decimal("10"),
            max_fill_percent=Decimal("50"),
            addresses={
                chain_a: "0x1234567890123456789012345678901234567890",
                chain_b: "GALPHA1234567890123456789012345678901234567890123456789",
            },
        ),
        ResolverProfile(
            id="resolver2",
            name="Resolver Beta",
            min_fill_percent=Decimal("20"),
            max_fill_percent=Decimal("60"),
            addresses={
                chain_a: "0x2345678901234567890123456789012345678901",
                chain_b: "GBETA12345678901234567890123456789012345678901234567890",
            },
        ),
        ResolverProfile(
            id="resolver3",
            name="Resolver Gamma",
            min_fill_percent=Decimal("10"),
            max_fill_percent=Decimal("40"),
            addresses={
                chain_a: "0x3456789012345678901234567890123456789012",
                chain_b: "GGAMMA1234567890123456789012345678901234567890123456789",
            },
        ),
    ]


class ResolverDirectory:
    """Read-only lookup of resolver profiles by id."""

    def __init__(self, profiles: Iterable[ResolverProfile]):
        self._profiles: dict[str, ResolverProfile] = {}
        for profile in profiles:
            if profile.id in self._profiles:
                raise ValueError(f"Duplicate resolver id: {profile.id}")
            self._profiles[profile.id] = profile

    @classmethod
    def from_json(
        cls, raw: str, master_key: Optional[str] = None
    ) -> "ResolverDirectory":
        """Load profiles from a JSON list, opening sealed credentials.

        Raises:
            pydantic.ValidationError: If the JSON does not describe profiles
            ValueError: If sealed credentials are present without a master key
        """
        profiles = []
        for profile in _profile_list.validate_json(raw):
            if profile.credentials:
                profile = profile.model_copy(
                    update={"credentials": open_credentials(profile.credentials, master_key)}
                )
            profiles.append(profile)
        return cls(profiles)

    @classmethod
    def from_settings(cls, settings) -> "ResolverDirectory":
        if settings.resolvers_json:
            directory = cls.from_json(settings.resolvers_json, settings.master_key)
            logger.info(f"Loaded {len(directory)} resolver profiles from configuration")
            return directory
        return cls(default_profiles(settings.chain_a_name, settings.chain_b_name))

    def get(self, resolver_id: str) -> Optional[ResolverProfile]:
        return self._profiles.get(resolver_id)

    def ids(self) -> list[str]:
        return list(self._profiles)

    def __contains__(self, resolver_id: object) -> bool:
        return resolver_id in self._profiles

    def __iter__(self) -> Iterator[ResolverProfile]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)
