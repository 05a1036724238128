"""Tag-based ownership classification.

EC2 offers no link between a resource and whoever launched it other than the
tags written at launch time. These functions read those tags back and decide
whether a resource belongs to this server and to a given template.

Everything here is pure: same tags and parameters, same answer.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from enum import StrEnum

from skyfleet.constants import FleetTag, NodeType, node_type_tag_value

type Tags = Mapping[str, str]


class TemplateMatch(StrEnum):
    UNTAGGED = "untagged"
    ANY_TEMPLATE = "any-template"
    LEGACY = "legacy"
    TEMPLATE = "template"
    OTHER_TEMPLATE = "other-template"

    @property
    def owned(self) -> bool:
        return self in _OWNED_TEMPLATE_MATCHES


class ServerMatch(StrEnum):
    SAME_SERVER = "same-server"
    OTHER_SERVER = "other-server"
    UNMARKED = "unmarked"
    UNMARKED_REJECTED = "unmarked-rejected"

    @property
    def owned(self) -> bool:
        return self in _OWNED_SERVER_MATCHES


_OWNED_TEMPLATE_MATCHES = frozenset({
    TemplateMatch.ANY_TEMPLATE,
    TemplateMatch.LEGACY,
    TemplateMatch.TEMPLATE,
})

_OWNED_SERVER_MATCHES = frozenset({ServerMatch.SAME_SERVER, ServerMatch.UNMARKED})

_LEGACY_VALUES = frozenset(str(t) for t in NodeType)


def _for_template(value: str, description: str | None) -> bool:
    return value in {node_type_tag_value(t, description) for t in NodeType}


type TemplateRule = Callable[[str, str | None], bool]

# Evaluated in order against the node-type tag value; first hit wins.
TEMPLATE_RULES: tuple[tuple[TemplateMatch, TemplateRule], ...] = (
    (TemplateMatch.ANY_TEMPLATE, lambda value, description: description is None),
    # Nodes launched before template descriptions were written into the tag
    (TemplateMatch.LEGACY, lambda value, description: value in _LEGACY_VALUES),
    (TemplateMatch.TEMPLATE, _for_template),
)


def classify_template(tags: Tags, description: str | None) -> TemplateMatch:
    value = tags.get(FleetTag.NODE_TYPE)
    if value is None:
        return TemplateMatch.UNTAGGED
    for match, rule in TEMPLATE_RULES:
        if rule(value, description):
            return match
    return TemplateMatch.OTHER_TEMPLATE


def classify_server(tags: Tags, server_url: str | None) -> ServerMatch:
    value = tags.get(FleetTag.SERVER_URL)
    if value is not None:
        return ServerMatch.SAME_SERVER if value == server_url else ServerMatch.OTHER_SERVER
    # Without a configured identity every unmarked resource is assumed ours
    return ServerMatch.UNMARKED if server_url is None else ServerMatch.UNMARKED_REJECTED


def is_owned_instance(tags: Tags, description: str | None) -> bool:
    """Whether the tags mark a resource launched for ``description``.

    With ``description=None`` any resource carrying a node-type tag matches.
    """
    return classify_template(tags, description).owned


def is_owned_by_server(tags: Tags, server_url: str | None) -> bool:
    return classify_server(tags, server_url).owned


def is_owned(tags: Tags, description: str | None, server_url: str | None) -> bool:
    return is_owned_instance(tags, description) and is_owned_by_server(tags, server_url)


def tags_from_aws(raw: Iterable[Mapping[str, str]] | None) -> dict[str, str]:
    """Convert EC2's ``[{"Key": ..., "Value": ...}]`` list to a plain dict."""
    return {t["Key"]: t.get("Value", "") for t in raw or ()}


def tags_to_aws(tags: Tags) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in tags.items()]


def fleet_tags(node_type: NodeType, description: str | None, server_url: str | None) -> dict[str, str]:
    """Tags written on every resource at launch."""
    tags = {FleetTag.NODE_TYPE.value: node_type_tag_value(node_type, description)}
    if server_url is not None:
        tags[FleetTag.SERVER_URL.value] = server_url
    return tags
