"""
Keyword relevance filters applied by the HTML adapters.

A car title is relevant when it names a chassis AND a variant; a part
title when it names the engine directly, or mentions an engine/part
together with a variant. Terms are configurable per site via
"search_terms" in sites.json.
"""
from typing import Any, Iterable, Mapping, Optional

DEFAULT_CAR_TERMS = {
    "chassis":  ["911", "996", "997"],
    "variants": ["gt3", "gt2", "turbo", "mezger"],
}

DEFAULT_PART_TERMS = {
    "direct":   ["mezger"],
    "context":  ["engine", "part"],
    "variants": ["gt3", "gt2", "turbo"],
}


def _any_in(text: str, terms: Iterable[str]) -> bool:
    return any(t.lower() in text for t in terms)


def is_relevant_car(title: Optional[str], terms: Optional[Mapping[str, Any]] = None) -> bool:
    terms = {**DEFAULT_CAR_TERMS, **(terms or {})}
    text  = (title or "").lower()
    return _any_in(text, terms["chassis"]) and _any_in(text, terms["variants"])


def is_relevant_part(title: Optional[str], terms: Optional[Mapping[str, Any]] = None) -> bool:
    terms = {**DEFAULT_PART_TERMS, **(terms or {})}
    text  = (title or "").lower()
    if _any_in(text, terms["direct"]):
        return True
    return _any_in(text, terms["context"]) and _any_in(text, terms["variants"])
