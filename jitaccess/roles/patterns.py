"""
Permission/resource pattern helpers.

Matching is case-sensitive. A pattern without `*` matches only the identical
literal; `*` matches any run of characters (including none), so `s3:*`
covers `s3:delete`. No other glob metacharacters are interpreted.
"""

from __future__ import annotations

from functools import lru_cache
import re
from typing import Iterable


@lru_cache(maxsize=4096)
def _compile(pattern: str) -> "re.Pattern[str]":
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$", re.DOTALL)


def matches(pattern: str, value: str) -> bool:
    if "*" not in pattern:
        return pattern == value
    return _compile(pattern).match(value) is not None


def matches_any(patterns: Iterable[str], value: str) -> bool:
    return any(matches(p, value) for p in patterns)


def expand_condensed(permission: str) -> list[str]:
    """Expand `k8s:pods:get,list` into `k8s:pods:get` and `k8s:pods:list`.

    Dotted actions (`compute.instances.get`) and entries without a `:` are
    atomic and returned unchanged.
    """
    idx = permission.rfind(":")
    if idx == -1:
        return [permission]
    actions = permission[idx + 1 :]
    if "." in actions or "," not in actions:
        return [permission]
    resource = permission[:idx]
    return [f"{resource}:{a.strip()}" for a in actions.split(",") if a.strip()]


def apply_deny(allow: Iterable[str], deny: Iterable[str]) -> frozenset[str]:
    """Remove every allow entry covered by a deny pattern.

    A deny narrower than an allow (`s3:*` vs `s3:delete`) cannot be subtracted
    from the allow entry; it stays in the deny set and wins at evaluation.
    """
    deny_list = list(deny)
    return frozenset(a for a in allow if not matches_any(deny_list, a))


__all__ = ["apply_deny", "expand_condensed", "matches", "matches_any"]
