"""
Index tag resolution.

Callers declare indexes as ``{"key": ..., "member": ...}`` pairs; the store
persists them as flat ``"key:member"`` tag strings and filters ``list`` calls
by exact tag equality.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

TAG_SEPARATOR = ":"


def make_tag(index_key: str, member: str) -> str:
    return f"{index_key}{TAG_SEPARATOR}{member}"


def resolve_tags(declarations: Optional[Iterable[Any]]) -> list[str]:
    """
    Translate index declarations into tag strings, in declaration order.

    Declarations missing either ``key`` or ``member`` are dropped. Duplicates
    are kept; callers are expected to send a minimal set.
    """
    if not declarations:
        return []
    tags: list[str] = []
    for declaration in declarations:
        if isinstance(declaration, Mapping):
            index_key = declaration.get("key")
            member = declaration.get("member")
        else:
            index_key = getattr(declaration, "key", None)
            member = getattr(declaration, "member", None)
        if not index_key or member is None or member == "":
            continue
        tags.append(make_tag(str(index_key), str(member)))
    return tags


def normalize_indexes(raw: Any) -> list[str]:
    """
    Normalize any index representation found in stored data to flat tags.

    Accepts the canonical tag list, a list of ``{key, member}`` pairs, or the
    older nested object form ``{"type": "document", "org": ["a", "b"]}``.
    """
    if not raw:
        return []
    if isinstance(raw, str):
        return [raw] if TAG_SEPARATOR in raw else []
    if isinstance(raw, Mapping):
        tags: list[str] = []
        for index_key, members in raw.items():
            if isinstance(members, (list, tuple)):
                tags.extend(make_tag(index_key, str(m)) for m in members if m is not None)
            elif members is not None and members != "":
                tags.append(make_tag(index_key, str(members)))
        return tags
    tags = []
    for item in raw:
        if isinstance(item, str):
            if TAG_SEPARATOR in item:
                tags.append(item)
        elif isinstance(item, Mapping):
            tags.extend(resolve_tags([item]))
    return tags


def matches(tags: Iterable[str], index_filter: Optional[str]) -> bool:
    """Exact single-tag match; no prefix or multi-tag composition."""
    if not index_filter:
        return True
    return index_filter in tags


def tags_to_declarations(tags: Iterable[str]) -> list[dict]:
    """Split stored tags back into ``{key, member}`` declarations."""
    declarations = []
    for tag in tags:
        index_key, separator, member = tag.partition(TAG_SEPARATOR)
        if separator:
            declarations.append({"key": index_key, "member": member})
    return declarations
