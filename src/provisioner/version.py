"""Kubernetes version upgrade gate.

EKS upgrades the control plane one minor version at a time and cannot
downgrade or cross a major version, so a desired version is checked against
the running one before anything is changed.
"""

from __future__ import annotations

import re
from typing import NamedTuple

_VERSION_PATTERN = re.compile(r"^([0-9]+)\.([0-9]+)$")


class VersionFormatError(ValueError):
    """Raised when a version string is not in '<major>.<minor>' form."""

    pass


class VersionUpgradeError(ValueError):
    """Raised when a version transition is not allowed in-place."""

    pass


class K8sVersion(NamedTuple):
    """A Kubernetes (major, minor) version pair."""

    major: int
    minor: int

    @classmethod
    def parse(cls, value: str, role: str = "") -> K8sVersion:
        """Parse '<major>.<minor>' strictly.

        Args:
            value: Version string such as "1.34".
            role: Which version this is ("current", "desired"), used in errors.

        Raises:
            VersionFormatError: If the string has any other shape.
        """
        match = _VERSION_PATTERN.fullmatch(value) if isinstance(value, str) else None
        if match is None:
            label = f"{role} Kubernetes version" if role else "Kubernetes version"
            raise VersionFormatError(
                f"invalid {label} {value!r}: version must be in format 'major.minor' "
                "(e.g. '1.34')"
            )
        return cls(int(match.group(1)), int(match.group(2)))

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


def validate_upgrade(current: str, desired: str) -> None:
    """Check that moving from current to desired is a legal in-place upgrade.

    Raises:
        VersionFormatError: If either version is malformed.
        VersionUpgradeError: For major changes, downgrades and skipped minors.
    """
    current_version = K8sVersion.parse(current, role="current")
    desired_version = K8sVersion.parse(desired, role="desired")

    if current_version == desired_version:
        return

    if desired_version.major != current_version.major:
        raise VersionUpgradeError(
            f"cannot change Kubernetes major version in-place "
            f"(current: {current_version}, desired: {desired_version})"
        )

    if desired_version.minor < current_version.minor:
        raise VersionUpgradeError(
            f"cannot downgrade Kubernetes version "
            f"(current: {current_version}, desired: {desired_version})"
        )

    if desired_version.minor > current_version.minor + 1:
        raise VersionUpgradeError(
            f"cannot skip Kubernetes minor versions "
            f"(current: {current_version}, desired: {desired_version}); "
            f"upgrade to {current_version.major}.{current_version.minor + 1} first"
        )
