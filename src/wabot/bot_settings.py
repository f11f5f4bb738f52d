"""Bot behaviour settings shared by every session.

Users edit these at runtime (unlike :mod:`wabot.config`, which is process
configuration). The persisted JSON uses camelCase keys (``autoReply``,
``workingHours``, ...); snake_case is accepted on input as well.

Models are frozen: a ``BotSettings`` instance is a snapshot, and updates
produce a new instance via :func:`merge_patch`.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping
from datetime import datetime, time
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from wabot.errors import SettingsValidationError

MAX_TEXT_LENGTH = 1000
_TIME_RE = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")

# Sub-objects merged key-by-key by update_settings; everything else is replaced.
MERGEABLE_SECTIONS = ("autoReply", "workingHours", "responseDelay")


class _SettingsModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


class AutoReplyConfig(_SettingsModel):
    enabled: bool = False
    message: str = Field(
        default="Thanks for your message! I'll get back to you soon.",
        max_length=MAX_TEXT_LENGTH,
    )


class WorkingHoursConfig(_SettingsModel):
    enabled: bool = False
    start: str = "09:00"
    end: str = "17:00"
    timezone: str = "UTC"

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        if not _TIME_RE.match(v):
            raise ValueError("Invalid time format (use HH:mm)")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as err:
            raise ValueError(f"Unknown timezone: {v}") from err
        return v

    def contains(self, at: datetime) -> bool:
        """Whether *at* (timezone-aware) falls inside ``[start, end)`` locally.

        ``start > end`` is an overnight window (e.g. 22:00-06:00).
        ``start == end`` covers the whole day.
        """
        local = at.astimezone(ZoneInfo(self.timezone)).time().replace(tzinfo=None)
        start = _parse_hhmm(self.start)
        end = _parse_hhmm(self.end)
        if start == end:
            return True
        if start < end:
            return start <= local < end
        return local >= start or local < end


class ResponseDelayConfig(_SettingsModel):
    """Random reply delay bounds, in milliseconds."""

    min: int = Field(default=1000, ge=0)
    max: int = Field(default=5000, ge=0)

    @model_validator(mode="after")
    def _min_le_max(self) -> ResponseDelayConfig:
        if self.min > self.max:
            raise ValueError("Minimum delay cannot be greater than maximum delay")
        return self


class MessageTemplate(_SettingsModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    name: str = ""
    trigger: str
    content: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)

    def matches(self, text: str) -> bool:
        return bool(self.trigger) and text.casefold() == self.trigger.casefold()


def _default_templates() -> list[MessageTemplate]:
    return [
        MessageTemplate(
            id="welcome",
            name="Welcome Message",
            trigger="!welcome",
            content="Welcome! How can I help you today?",
        ),
        MessageTemplate(
            id="help",
            name="Help Message",
            trigger="!help",
            content=(
                "Available commands:\n"
                "!welcome - Show welcome message\n"
                "!help - Show this help message"
            ),
        ),
    ]


class BotSettings(_SettingsModel):
    auto_reply: AutoReplyConfig = AutoReplyConfig()
    auto_read: bool = False
    working_hours: WorkingHoursConfig = WorkingHoursConfig()
    response_delay: ResponseDelayConfig = ResponseDelayConfig()
    message_templates: tuple[MessageTemplate, ...] = Field(
        default_factory=lambda: tuple(_default_templates())
    )
    absence_message: str = Field(
        default="I'm currently outside working hours. I'll respond when I'm back.",
        max_length=MAX_TEXT_LENGTH,
    )
    updated_at: str | None = None

    def match_template(self, text: str) -> MessageTemplate | None:
        """First template, in list order, whose trigger equals *text* ignoring case."""
        for template in self.message_templates:
            if template.matches(text):
                return template
        return None

    def to_document(self) -> dict[str, Any]:
        """JSON-ready dict with camelCase keys, as persisted and exported."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Parsing and merging
# ---------------------------------------------------------------------------


def _parse_hhmm(value: str) -> time:
    hour, minute = value.split(":")
    return time(int(hour), int(minute))


def _alias_map(model: type[BaseModel]) -> dict[str, str]:
    """Map both field names and aliases to the alias."""
    out: dict[str, str] = {}
    for name, info in model.model_fields.items():
        alias = info.alias or name
        out[name] = alias
        out[alias] = alias
    return out


_TOP_ALIASES = _alias_map(BotSettings)
_SECTION_ALIASES = {
    "autoReply": _alias_map(AutoReplyConfig),
    "workingHours": _alias_map(WorkingHoursConfig),
    "responseDelay": _alias_map(ResponseDelayConfig),
}


def parse_settings(data: Mapping[str, Any]) -> BotSettings:
    """Validate a full settings document. Raises SettingsValidationError."""
    try:
        return BotSettings.model_validate(dict(data))
    except ValidationError as exc:
        raise SettingsValidationError(_describe(exc)) from exc


def merge_patch(current: BotSettings, patch: Mapping[str, Any]) -> BotSettings:
    """Return a new snapshot with *patch* merged over *current*.

    Keys absent from *patch* (or set to None) keep their current value.
    ``autoReply``, ``workingHours`` and ``responseDelay`` merge one level
    deep; ``messageTemplates`` is replaced as a whole list.
    """
    merged = current.to_document()
    for key, value in patch.items():
        alias = _TOP_ALIASES.get(key, key)
        if value is None:
            continue
        if alias in MERGEABLE_SECTIONS:
            if not isinstance(value, Mapping):
                raise SettingsValidationError(f"{alias} must be an object")
            section_aliases = _SECTION_ALIASES[alias]
            section = dict(merged[alias])
            for sub_key, sub_value in value.items():
                if sub_value is None:
                    continue
                section[section_aliases.get(sub_key, sub_key)] = sub_value
            merged[alias] = section
        else:
            merged[alias] = value
    return parse_settings(merged)


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)
