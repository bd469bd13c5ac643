"""
Routing directives carried in a subscription's `clientState`.

Two grammars are accepted and decode to the same structure:

    current:  destination:queue|handler:document|queue:Q1|tenant:PROD|folder:376
    legacy:   processor:document;uipath:Q1;env:PROD;folder:376

Tokens are `key:value` (split on the first colon) or one of the bare flags
`detect-changes` / `uipath`. Unknown keys are kept in `extras`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .exceptions import MalformedDirective

logger = logging.getLogger(__name__)

CURRENT = "current"
LEGACY = "legacy"

DESTINATION_QUEUE = "queue"
DESTINATION_FORWARD = "forward"
DESTINATION_NONE = "none"

MODE_SIMPLE = "simple"
MODE_WITH_DATA = "withData"
MODE_WITH_CHANGES = "withChanges"

_MODE_ALIASES = {
    "simple": MODE_SIMPLE,
    "withdata": MODE_WITH_DATA,
    "fullstate": MODE_WITH_DATA,
    "withchanges": MODE_WITH_CHANGES,
}

_LEGACY_ONLY_KEYS = frozenset(
    {"processor", "uipath", "env", "environment", "config", "includefields", "excludefields", "organizationunitid"}
)
_BARE_FLAGS = frozenset({"detect-changes", "uipath"})
_ENABLED_VALUES = frozenset({"enabled", "true", "yes", "on"})
_QUEUE_PROCESSOR_VALUES = frozenset({"queue", "uipath"})


@dataclass(frozen=True)
class EnvironmentSelector:
    name: str = ""
    folder: str = ""


@dataclass(frozen=True)
class RoutingDirective:
    destination: str = DESTINATION_NONE
    handler: str = ""
    target: str = ""
    environment: EnvironmentSelector | None = None
    label: str = ""
    mode: str = MODE_SIMPLE
    detect_changes: bool = False
    include_fields: tuple[str, ...] = ()
    exclude_fields: tuple[str, ...] = ()
    extras: dict[str, str] = field(default_factory=dict)
    grammar: str = field(default=CURRENT, compare=False)
    raw: str = field(default="", compare=False)

    @property
    def wants_changes(self) -> bool:
        return self.detect_changes or (
            self.destination == DESTINATION_FORWARD and self.mode == MODE_WITH_CHANGES
        )

    def as_dict(self) -> dict:
        return {
            "destination": self.destination,
            "handler": self.handler or None,
            "target": self.target or None,
            "environment": (
                {"name": self.environment.name or None, "folder": self.environment.folder or None}
                if self.environment
                else None
            ),
            "label": self.label or None,
            "mode": self.mode,
            "detect_changes": self.detect_changes,
            "grammar": self.grammar,
        }


def _field_list(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _detect_grammar(raw: str) -> str:
    if "|" in raw:
        return CURRENT
    if ";" in raw:
        return LEGACY
    key = raw.split(":", 1)[0].strip().lower()
    return LEGACY if key in _LEGACY_ONLY_KEYS else CURRENT


class _Builder:
    def __init__(self) -> None:
        self.destination = ""
        self.handler = ""
        self.target = ""
        self.env_name = ""
        self.folder = ""
        self.label = ""
        self.mode = ""
        self.detect_changes = False
        self.include: tuple[str, ...] = ()
        self.exclude: tuple[str, ...] = ()
        self.extras: dict[str, str] = {}

    def imply(self, destination: str) -> None:
        if not self.destination:
            self.destination = destination

    def set_mode(self, value: str) -> None:
        # Unknown modes are kept verbatim and rejected by validate_directive().
        self.mode = _MODE_ALIASES.get(value.lower(), value)

    def build(self, grammar: str, raw: str) -> RoutingDirective:
        environment = None
        if self.env_name or self.folder:
            environment = EnvironmentSelector(name=self.env_name, folder=self.folder)
        return RoutingDirective(
            destination=self.destination or DESTINATION_NONE,
            handler=self.handler,
            target=self.target,
            environment=environment,
            label=self.label,
            mode=self.mode or MODE_SIMPLE,
            detect_changes=self.detect_changes,
            include_fields=self.include,
            exclude_fields=self.exclude,
            extras=self.extras,
            grammar=grammar,
            raw=raw,
        )


def _apply_current(b: _Builder, key: str, value: str) -> None:
    if key == "destination":
        b.destination = value.lower()
    elif key == "handler":
        b.handler = value.lower()
    elif key == "queue":
        b.target = value
        b.imply(DESTINATION_QUEUE)
    elif key == "url":
        b.target = value
    elif key == "forward":
        b.target = value
        b.imply(DESTINATION_FORWARD)
    elif key == "tenant":
        b.env_name = value
    elif key == "folder":
        b.folder = value
    elif key == "label":
        b.label = value
    elif key == "mode":
        b.set_mode(value)
    elif key == "include":
        b.include = _field_list(value)
    elif key == "exclude":
        b.exclude = _field_list(value)
    elif key == "changes":
        b.detect_changes = value.lower() in _ENABLED_VALUES
    else:
        b.extras[key] = value


def _apply_legacy(b: _Builder, key: str, value: str) -> None:
    if key == "processor":
        if value.lower() in _QUEUE_PROCESSOR_VALUES:
            b.destination = DESTINATION_QUEUE
        else:
            b.handler = value.lower()
    elif key == "uipath":
        b.imply(DESTINATION_QUEUE)
        if value.lower() not in _ENABLED_VALUES:
            b.target = value
    elif key == "forward":
        b.target = value
        b.imply(DESTINATION_FORWARD)
    elif key in ("env", "environment"):
        b.env_name = value
    elif key in ("folder", "organizationunitid"):
        b.folder = value
    elif key == "config":
        b.label = value
    elif key == "mode":
        b.set_mode(value)
    elif key == "includefields":
        b.include = _field_list(value)
    elif key == "excludefields":
        b.exclude = _field_list(value)
    else:
        b.extras[key] = value


def parse_directive(raw: str | None) -> RoutingDirective:
    """
    Decode a routing directive.

    An empty directive means "no destination". Raises MalformedDirective for a
    token that has no `:` and is not a recognized bare flag.
    """
    text = (raw or "").strip()
    if not text:
        return RoutingDirective(raw=raw or "")

    grammar = _detect_grammar(text)
    separator = "|" if grammar == CURRENT else ";"
    apply = _apply_current if grammar == CURRENT else _apply_legacy
    builder = _Builder()

    for token in text.split(separator):
        token = token.strip()
        if not token:
            continue
        if ":" not in token:
            flag = token.lower()
            if flag not in _BARE_FLAGS:
                raise MalformedDirective(f"Unrecognized token {token!r} in routing directive")
            if flag == "detect-changes":
                builder.detect_changes = True
            else:
                builder.imply(DESTINATION_QUEUE)
            continue

        key, value = token.split(":", 1)
        apply(builder, key.strip().lower(), value.strip())

    return builder.build(grammar, text)


def validate_directive(directive: RoutingDirective) -> RoutingDirective:
    """Reject directives that cannot be dispatched. Returns the directive unchanged."""
    if directive.destination not in (DESTINATION_QUEUE, DESTINATION_FORWARD, DESTINATION_NONE):
        raise MalformedDirective(f"Unknown destination {directive.destination!r}")
    if directive.destination == DESTINATION_QUEUE and not directive.handler:
        raise MalformedDirective("Queue destination requires a handler")
    if directive.destination == DESTINATION_FORWARD:
        if not directive.target.lower().startswith(("http://", "https://")):
            raise MalformedDirective("Forward destination requires an http(s) URL")
        if directive.mode not in (MODE_SIMPLE, MODE_WITH_DATA, MODE_WITH_CHANGES):
            raise MalformedDirective(f"Unknown forwarding mode {directive.mode!r}")
    return directive
