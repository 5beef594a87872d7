"""
Role registry, definitions and pattern helper tests.

Why:
    The registry publishes immutable snapshots; a resolution that already
    holds a snapshot must never observe later edits. Definitions parsing is the
    only gate for administrative input, so its limits are checked here too.
"""
from __future__ import annotations

import pytest

from jitaccess.errors import ConfigurationError
from jitaccess.roles.definitions import MAX_PROVIDERS, parse_role, parse_role_definitions, role_to_dict
from jitaccess.roles.domain import Catalog, Role
from jitaccess.roles.patterns import apply_deny, expand_condensed, matches
from jitaccess.roles.registry import RoleRegistry


def test_put_role_publishes_new_snapshot_and_keeps_old_one_intact():
    registry = RoleRegistry([Role(id="a", name="A")])
    before = registry.snapshot()

    after = registry.put_role(Role(id="b"))

    assert after.version == before.version + 1
    assert set(before.roles) == {"a"}
    assert set(after.roles) == {"a", "b"}
    assert registry.get_role("b") is not None


def test_remove_role_reports_missing():
    registry = RoleRegistry([Role(id="a")])

    assert registry.remove_role("a") is True
    assert registry.remove_role("a") is False
    assert registry.get_role("a") is None


def test_duplicate_role_ids_are_rejected():
    with pytest.raises(ConfigurationError):
        RoleRegistry([Role(id="a"), Role(id="a")])


def test_install_catalog_replaces_previous_catalog_for_provider():
    registry = RoleRegistry()
    registry.install_catalog(Catalog(provider_id="aws", version="v1"))
    registry.install_catalog(Catalog(provider_id="aws", version="v2"))

    assert registry.catalog("aws").version == "v2"
    assert registry.snapshot().catalog_version("aws") == "v2"
    assert registry.snapshot().known_providers == frozenset({"aws"})


def test_parse_role_defaults_name_and_dedupes_lists():
    role = parse_role(
        "ops",
        {
            "permissions": {"allow": ["a:b", "a:b"], "deny": ["a:c"]},
            "workflows": ["slack:#ops", "slack:#ops"],
            "providers": ["local"],
            "scopes": {"domains": ["example.com"]},
        },
    )

    assert role.name == "ops"
    assert role.permissions.allow == frozenset({"a:b"})
    assert role.workflows == ("slack:#ops",)
    assert role_to_dict(role)["scopes"]["domains"] == ["example.com"]


@pytest.mark.parametrize(
    "raw",
    [
        {"permissions": ["a:b"]},
        {"inherits": "parent"},
        {"workflows": [""]},
        {"scopes": ["admins"]},
        {"enabled": "false"},
        {"enabled": 0},
        {"providers": [f"p{i}" for i in range(MAX_PROVIDERS + 1)]},
    ],
)
def test_parse_role_rejects_malformed_definitions(raw):
    with pytest.raises(ConfigurationError):
        parse_role("bad", raw)


def test_parse_role_definitions_skips_disabled_roles():
    roles = parse_role_definitions({"b": {}, "a": {}, "off": {"enabled": False}})

    assert [r.id for r in roles] == ["a", "b"]


def test_pattern_matching_is_literal_unless_wildcard():
    assert matches("s3:*", "s3:delete")
    assert matches("s3:get", "s3:get")
    assert not matches("s3:get", "s3:GET")
    assert not matches("s3:get?", "s3:get1")


def test_expand_condensed_keeps_dotted_and_plain_entries():
    assert expand_condensed("k8s:pods:get, list") == ["k8s:pods:get", "k8s:pods:list"]
    assert expand_condensed("compute.instances.get") == ["compute.instances.get"]
    assert expand_condensed("s3:get") == ["s3:get"]


def test_apply_deny_removes_only_covered_allows():
    assert apply_deny({"s3:get", "s3:delete", "ec2:*"}, {"s3:*"}) == frozenset({"ec2:*"})
    assert apply_deny({"s3:*"}, {"s3:delete"}) == frozenset({"s3:*"})
