"""Static target matrix.

Every leg a run can execute is declared here. The table is fixed when the
orchestrator is released; adding a platform means editing TARGET_REGISTRY
and shipping a new version.
"""

from __future__ import annotations

import platform
from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict, Field

from cross_release.types import HostClass, ToolchainChannel


class RegistryError(Exception):
    """Raised when the target table violates its invariants."""

    def __init__(self, message: str, code: str = "registry_invalid") -> None:
        super().__init__(message)
        self.code = code


class TargetSpec(BaseModel):
    """One matrix leg.

    Attributes:
        triple: Platform identifier passed to the toolchain.
        host_class: Class of machine able to build the triple.
        channel: Toolchain channel the leg builds with.
        vendor_tag: Conformance suite selector for nightly test legs.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    triple: str = Field(min_length=1, description="Target triple")
    host_class: HostClass = Field(default=HostClass.LINUX)
    channel: ToolchainChannel = Field(default=ToolchainChannel.STABLE)
    vendor_tag: str | None = Field(default=None, min_length=1)

    @property
    def leg_id(self) -> str:
        """Identity of the leg within a run."""
        if self.vendor_tag:
            return f"{self.triple}+{self.vendor_tag}"
        return self.triple

    @property
    def publish_eligible(self) -> bool:
        """Whether the leg may be packaged and released."""
        return self.vendor_tag is None


def _nightly_vendor_leg(vendor: str) -> TargetSpec:
    return TargetSpec(
        triple="x86_64-unknown-linux-gnu",
        host_class=HostClass.LINUX,
        channel=ToolchainChannel.NIGHTLY,
        vendor_tag=vendor,
    )


CONFORMANCE_VENDORS = (
    "Atmel",
    "Freescale",
    "Fujitsu",
    "Holtek",
    "Nordic",
    "Nuvoton",
    "NXP",
    "SiliconLabs",
    "Spansion",
    "STMicro",
    "Toshiba",
    "OTHER",
)

TARGET_REGISTRY: tuple[TargetSpec, ...] = (
    # Nightly, for testing
    *(_nightly_vendor_leg(vendor) for vendor in CONFORMANCE_VENDORS),
    # Linux
    TargetSpec(triple="i686-unknown-linux-gnu"),
    TargetSpec(triple="i686-unknown-linux-musl"),
    TargetSpec(triple="x86_64-unknown-linux-gnu"),
    TargetSpec(triple="x86_64-unknown-linux-musl"),
    # OSX
    TargetSpec(triple="i686-apple-darwin", host_class=HostClass.DARWIN),
    TargetSpec(triple="x86_64-apple-darwin", host_class=HostClass.DARWIN),
)


def validate_registry(targets: Iterable[TargetSpec]) -> tuple[TargetSpec, ...]:
    """Check the invariants of a target table.

    Args:
        targets: Target specs in declaration order.

    Returns:
        The targets as a tuple.

    Raises:
        RegistryError: On a duplicate leg, a duplicate publishable triple,
            or a vendor tag on a stable leg.
    """
    table = tuple(targets)
    seen_legs: set[str] = set()
    seen_triples: set[str] = set()

    for spec in table:
        if spec.leg_id in seen_legs:
            raise RegistryError(f"Duplicate leg in target registry: {spec.leg_id}")
        seen_legs.add(spec.leg_id)

        if spec.vendor_tag and spec.channel is not ToolchainChannel.NIGHTLY:
            raise RegistryError(
                f"Vendor conformance leg must use the nightly channel: {spec.leg_id}"
            )

        if spec.publish_eligible:
            if spec.triple in seen_triples:
                raise RegistryError(
                    f"Duplicate publishable triple in target registry: {spec.triple}"
                )
            seen_triples.add(spec.triple)

    return table


def all_targets() -> tuple[TargetSpec, ...]:
    """Return every declared leg in declaration order."""
    return validate_registry(TARGET_REGISTRY)


def targets_for_host(
    host_class: HostClass,
    channel: ToolchainChannel | None = None,
    targets: Iterable[TargetSpec] | None = None,
) -> list[TargetSpec]:
    """Filter the matrix down to legs the current host can run.

    Args:
        host_class: Class of the machine executing the run.
        channel: Only keep legs for this channel (None = all channels).
        targets: Target table to filter (defaults to the registry).

    Returns:
        Matching targets in declaration order.
    """
    table = all_targets() if targets is None else validate_registry(targets)
    return [
        spec
        for spec in table
        if spec.host_class is host_class and (channel is None or spec.channel is channel)
    ]


def detect_host_class(system: str | None = None) -> HostClass:
    """Classify the current machine.

    Args:
        system: Result of platform.system() (detected if not given).

    Returns:
        HostClass for the machine.

    Raises:
        RegistryError: If the platform has no legs in the matrix.
    """
    system = system or platform.system()
    if system == "Linux":
        return HostClass.LINUX
    if system == "Darwin":
        return HostClass.DARWIN
    raise RegistryError(f"Unsupported host platform: {system}", code="unsupported_host")


__all__ = [
    "CONFORMANCE_VENDORS",
    "RegistryError",
    "TARGET_REGISTRY",
    "TargetSpec",
    "all_targets",
    "detect_host_class",
    "targets_for_host",
    "validate_registry",
]
