"""Composite resource identity and idempotency tokens.

A remote object addressed by several API-level keys (instance, table, index)
is stored as one opaque string, ``instance:table:index``. The string is the only
datum persisted between invocations, so decoding validates it strictly.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from cloudreconcile.errors import IdentityFormatError

SEPARATOR = ":"
_TOKEN_NAMESPACE = uuid.UUID("6f1c1f0e-3c4b-5d2a-9e1f-7a8b9c0d1e2f")


def _validate_components(components: Sequence[str]) -> list[str]:
    if not components:
        raise IdentityFormatError(
            "Resource identity needs at least one component.",
            hint="Pass every API-level key of the resource.",
        )
    validated: list[str] = []
    for index, component in enumerate(components):
        if not isinstance(component, str):
            raise IdentityFormatError(
                f"Identity component {index} is not a string: {component!r}",
                value=repr(component),
            )
        if SEPARATOR in component:
            raise IdentityFormatError(
                f"Identity component {index} contains the separator {SEPARATOR!r}: {component}",
                hint=f"Component values must not contain {SEPARATOR!r}.",
                value=component,
            )
        validated.append(component)
    return validated


def encode_id(components: Sequence[str]) -> str:
    return SEPARATOR.join(_validate_components(list(components)))


def decode_id(value: str, expected_count: int) -> list[str]:
    if expected_count < 1:
        raise IdentityFormatError(
            f"Resource identity needs at least one component, expected_count={expected_count}",
            hint="Pass the number of API-level keys the identity is built from.",
            value=value if isinstance(value, str) else repr(value),
        )
    if not isinstance(value, str):
        raise IdentityFormatError(f"Resource identity is not a string: {value!r}", value=repr(value))
    parts = value.split(SEPARATOR)
    if len(parts) != expected_count:
        raise IdentityFormatError(
            f"Invalid resource identity {value!r}: expected {expected_count} components, got {len(parts)}",
            hint="The stored identity is corrupted; re-import the resource.",
            value=value,
        )
    return parts


@dataclass(frozen=True)
class ResourceIdentity:
    components: tuple[str, ...]

    def __post_init__(self) -> None:
        _validate_components(self.components)

    @classmethod
    def of(cls, *components: str) -> ResourceIdentity:
        return cls(tuple(components))

    @classmethod
    def parse(cls, value: str, expected_count: int) -> ResourceIdentity:
        return cls(tuple(decode_id(value, expected_count)))

    def __str__(self) -> str:
        return encode_id(self.components)

    def __len__(self) -> int:
        return len(self.components)

    def __getitem__(self, index: int) -> str:
        return self.components[index]


def coerce_identity(value: ResourceIdentity | str | Iterable[str], expected_count: int | None = None) -> ResourceIdentity:
    if isinstance(value, ResourceIdentity):
        if expected_count is not None and len(value) != expected_count:
            raise IdentityFormatError(
                f"Invalid resource identity {value}: expected {expected_count} components, got {len(value)}",
                value=str(value),
            )
        return value
    if isinstance(value, str):
        if expected_count is None:
            expected_count = value.count(SEPARATOR) + 1
        return ResourceIdentity.parse(value, expected_count)
    return ResourceIdentity(tuple(value))


def build_client_token(action: str, identity: ResourceIdentity | str | None = None) -> str:
    """Idempotency token for a mutating call.

    Stable for a given action and identity so a retried request is recognised
    by the vendor as the same request. Without an identity (creates that have
    no name yet) the token is random per call site invocation and the caller
    must reuse it across retries.
    """
    if identity is None:
        return f"{action}-{uuid.uuid4().hex}"
    digest = uuid.uuid5(_TOKEN_NAMESPACE, f"{action}{SEPARATOR}{identity}")
    return f"{action}-{digest.hex}"
