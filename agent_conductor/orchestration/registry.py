"""
Profile registry for Agent Conductor.

Holds the named role definitions the strategies launch. Profiles arrive
already parsed; the registry only stores and looks them up.
"""

from typing import Dict, Iterable, List, Optional

from ..models.core import CapabilityProfile
from ..models.errors import DuplicateRoleError, RoleNotFoundError
from ..utils.logging import get_logger

logger = get_logger(__name__)


class ProfileRegistry:
    """
    Registry of capability profiles keyed by role name.
    """

    def __init__(self, profiles: Optional[Iterable[CapabilityProfile]] = None):
        self._profiles: Dict[str, CapabilityProfile] = {}
        self.logger = get_logger(f"{__name__}.ProfileRegistry")
        if profiles:
            self.register_many(profiles)

    def register(self, profile: CapabilityProfile) -> None:
        """
        Register a profile.

        Args:
            profile: Profile to register

        Raises:
            DuplicateRoleError: A profile with the same name already exists
        """
        if profile.name in self._profiles:
            raise DuplicateRoleError(profile.name)
        self._profiles[profile.name] = profile
        self.logger.info("Registered role", role=profile.name, tools=profile.capability_set)

    def register_many(self, profiles: Iterable[CapabilityProfile]) -> None:
        for profile in profiles:
            self.register(profile)

    def unregister(self, name: str) -> bool:
        """Remove a role; returns False when it was not registered."""
        removed = self._profiles.pop(name, None)
        if removed is not None:
            self.logger.info("Unregistered role", role=name)
        return removed is not None

    def lookup(self, name: str) -> CapabilityProfile:
        """
        Retrieve a profile by role name.

        Raises:
            RoleNotFoundError: Unknown role; the error lists the valid names
        """
        profile = self._profiles.get(name)
        if profile is None:
            raise RoleNotFoundError(name, self.names())
        return profile

    def get(self, name: str) -> Optional[CapabilityProfile]:
        return self._profiles.get(name)

    def list(self) -> List[CapabilityProfile]:
        """Profiles in registration order."""
        return list(self._profiles.values())

    def names(self) -> List[str]:
        return list(self._profiles.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)
