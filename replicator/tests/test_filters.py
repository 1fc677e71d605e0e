from __future__ import annotations

from types import SimpleNamespace

import pytest

from replicator.src.filters import NamespacePolicy, is_eligible
from replicator.tests.fakes import make_namespace


@pytest.mark.parametrize(
    ("name", "labels", "exclude_key", "expected"),
    [
        ("ns1", {}, "", True),
        ("src", {}, "", False),
        ("ns1", {"skip": "true"}, "skip", False),
        ("ns1", {"skip": ""}, "skip", False),
        ("ns1", {"other": "true"}, "skip", True),
        ("ns1", {"skip": "true"}, "", True),
        ("ns1", None, "skip", True),
    ],
)
def test_is_eligible(
    name: str, labels: dict[str, str] | None, exclude_key: str, expected: bool
) -> None:
    assert is_eligible(name, labels, "src", exclude_key) is expected


def test_policy_checks_label_key_not_value() -> None:
    policy = NamespacePolicy(source_namespace="src", exclude_label_key="skip")

    assert policy.allows(make_namespace("ns1"))
    assert not policy.allows(make_namespace("ns2", {"skip": "false"}))
    assert not policy.allows(make_namespace("src"))


def test_policy_rejects_namespace_without_name() -> None:
    policy = NamespacePolicy(source_namespace="src")

    assert not policy.allows(SimpleNamespace(metadata=SimpleNamespace(name=None, labels={})))
    assert not policy.allows(SimpleNamespace())
