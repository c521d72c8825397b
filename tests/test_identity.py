from __future__ import annotations

import pytest

from cloudreconcile.errors import ExitCode, IdentityFormatError
from cloudreconcile.identity import (
    ResourceIdentity,
    build_client_token,
    coerce_identity,
    decode_id,
    encode_id,
)


def test_encode_joins_components_in_order() -> None:
    assert encode_id(["inst-1", "orders", "by_date"]) == "inst-1:orders:by_date"


def test_decode_splits_with_expected_count() -> None:
    assert decode_id("inst-1:orders:by_date", 3) == ["inst-1", "orders", "by_date"]


def test_single_component_identity() -> None:
    assert encode_id(["vpc-123"]) == "vpc-123"
    assert decode_id("vpc-123", 1) == ["vpc-123"]


def test_empty_components_are_preserved() -> None:
    assert encode_id(["a", "", "c"]) == "a::c"
    assert decode_id("a::c", 3) == ["a", "", "c"]


def test_decode_rejects_component_count_mismatch() -> None:
    with pytest.raises(IdentityFormatError) as exc_info:
        decode_id("inst-1:orders", 3)

    assert exc_info.value.code == ExitCode.IDENTITY_ERROR
    assert "expected 3 components, got 2" in exc_info.value.message


def test_encode_rejects_separator_inside_component() -> None:
    with pytest.raises(IdentityFormatError):
        encode_id(["inst:1", "orders"])


def test_encode_rejects_empty_component_list() -> None:
    with pytest.raises(IdentityFormatError):
        encode_id([])


def test_decode_rejects_non_positive_count() -> None:
    with pytest.raises(IdentityFormatError) as exc_info:
        decode_id("a", 0)

    assert exc_info.value.code == ExitCode.IDENTITY_ERROR


def test_resource_identity_parse_and_index() -> None:
    identity = ResourceIdentity.parse("inst-1:orders", 2)

    assert identity == ResourceIdentity.of("inst-1", "orders")
    assert identity[1] == "orders"
    assert len(identity) == 2
    assert str(identity) == "inst-1:orders"


def test_coerce_identity_from_string_and_sequence() -> None:
    assert coerce_identity("a:b").components == ("a", "b")
    assert coerce_identity(["a", "b"]) == ResourceIdentity.of("a", "b")
    with pytest.raises(IdentityFormatError):
        coerce_identity(ResourceIdentity.of("a", "b"), expected_count=3)


def test_client_token_is_stable_for_identity() -> None:
    identity = ResourceIdentity.of("inst-1", "orders")

    first = build_client_token("create", identity)
    second = build_client_token("create", "inst-1:orders")

    assert first == second
    assert first.startswith("create-")
    assert build_client_token("delete", identity) != first


def test_client_token_without_identity_is_unique() -> None:
    assert build_client_token("create") != build_client_token("create")
