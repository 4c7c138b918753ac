"""Validated per-mode options for the batch processor."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

from batch_queue.errors import ValidationError
from batch_queue.models import ClaimFilters, RetryPolicy

DEFAULT_BATCH_SIZE = 1


class Mode(str, Enum):
    """Processor modes; each is a run-to-completion routine."""

    CREATE = "create"
    RUN = "run"
    MASTER = "master"
    SLAVE = "slave"
    STATUS = "status"
    CLEAR = "clear"
    TERMINATE = "terminate"


@dataclass(slots=True, frozen=True)
class CreateOptions:
    policy: RetryPolicy
    shuffle: bool = False

    mode = Mode.CREATE


@dataclass(slots=True, frozen=True)
class RunOptions:
    policy: RetryPolicy
    batch_size: int = DEFAULT_BATCH_SIZE
    sleep_ms: int = 0
    shuffle: bool = False
    filters: ClaimFilters = field(default_factory=ClaimFilters)

    mode = Mode.RUN


@dataclass(slots=True, frozen=True)
class MasterOptions:
    policy: RetryPolicy
    slave_count: int
    batch_size: int = DEFAULT_BATCH_SIZE
    sleep_ms: int = 0
    shuffle: bool = False
    filters: ClaimFilters = field(default_factory=ClaimFilters)

    mode = Mode.MASTER


@dataclass(slots=True, frozen=True)
class SlaveOptions:
    policy: RetryPolicy
    lease_id: str
    sleep_ms: int = 0
    shuffle: bool = False

    mode = Mode.SLAVE


@dataclass(slots=True, frozen=True)
class StatusOptions:
    mode = Mode.STATUS


@dataclass(slots=True, frozen=True)
class ClearOptions:
    mode = Mode.CLEAR


@dataclass(slots=True, frozen=True)
class TerminateOptions:
    mode = Mode.TERMINATE


ModeOptions = (
    CreateOptions
    | RunOptions
    | MasterOptions
    | SlaveOptions
    | StatusOptions
    | ClearOptions
    | TerminateOptions
)

_POLICY_OPTIONS = frozenset({"max_attempts", "lifetime"})
_PROCESSING_OPTIONS = frozenset({"sleep_ms", "shuffle"})
_CLAIM_OPTIONS = frozenset({"batch_size", "data1", "data2", "data3"})

MODE_OPTIONS: dict[Mode, frozenset[str]] = {
    Mode.CREATE: _POLICY_OPTIONS | {"shuffle"},
    Mode.RUN: _POLICY_OPTIONS | _PROCESSING_OPTIONS | _CLAIM_OPTIONS,
    Mode.MASTER: _POLICY_OPTIONS | _PROCESSING_OPTIONS | _CLAIM_OPTIONS | {"slave_count"},
    Mode.SLAVE: _POLICY_OPTIONS | _PROCESSING_OPTIONS | {"lease_id"},
    Mode.STATUS: frozenset(),
    Mode.CLEAR: frozenset(),
    Mode.TERMINATE: frozenset(),
}

ALL_OPTIONS = frozenset().union(*MODE_OPTIONS.values())


def build_mode_options(mode: Mode | str | None = None, **raw: Any) -> ModeOptions:
    """Validate loosely-typed options once and build the options of one mode.

    ``None`` values count as unset. When ``mode`` is omitted it defaults to
    master if ``slave_count`` is given and to run otherwise.
    """

    given = {name: value for name, value in raw.items() if value is not None}
    unknown = sorted(set(given) - ALL_OPTIONS)
    if unknown:
        raise ValidationError(f"Unsupported option: {unknown[0]}")

    resolved = _resolve_mode(mode, given)
    for name in sorted(given):
        if name not in MODE_OPTIONS[resolved]:
            raise ValidationError(
                f"The option '{name}' is incompatible with mode '{resolved.value}'",
                code="INCONSISTENT_PARAMETERS",
            )

    if resolved is Mode.STATUS:
        return StatusOptions()
    if resolved is Mode.CLEAR:
        return ClearOptions()
    if resolved is Mode.TERMINATE:
        return TerminateOptions()

    policy = _policy(given)
    shuffle = _bool_option(given, "shuffle")
    if resolved is Mode.CREATE:
        return CreateOptions(policy=policy, shuffle=shuffle)

    sleep_ms = _int_option(given, "sleep_ms", default=0, minimum=0)
    if resolved is Mode.SLAVE:
        lease_id = given.get("lease_id")
        if not isinstance(lease_id, str) or not lease_id.strip():
            raise ValidationError("Missing lease ID", code="MISSING_PARAMETER")
        return SlaveOptions(
            policy=policy,
            lease_id=lease_id.strip(),
            sleep_ms=sleep_ms,
            shuffle=shuffle,
        )

    batch_size = _int_option(given, "batch_size", default=DEFAULT_BATCH_SIZE, minimum=1)
    filters = _filters(given)
    if resolved is Mode.RUN:
        return RunOptions(
            policy=policy,
            batch_size=batch_size,
            sleep_ms=sleep_ms,
            shuffle=shuffle,
            filters=filters,
        )
    slave_count = _int_option(given, "slave_count", default=None, minimum=1)
    if slave_count is None:
        raise ValidationError("Missing 'slave_count'", code="MISSING_PARAMETER")
    return MasterOptions(
        policy=policy,
        slave_count=slave_count,
        batch_size=batch_size,
        sleep_ms=sleep_ms,
        shuffle=shuffle,
        filters=filters,
    )


def parse_mode_options(values: Mapping[str, Any]) -> ModeOptions:
    """Build options from a mapping carrying an optional ``mode`` key."""

    raw = dict(values)
    mode = raw.pop("mode", None)
    return build_mode_options(mode, **raw)


def slave_arguments(options: MasterOptions, lease_id: str) -> dict[str, str]:
    """Options handed to a slave process, with the mode forced to slave."""

    arguments = {"lease_id": lease_id}
    if options.policy.max_attempts is not None:
        arguments["max_attempts"] = str(options.policy.max_attempts)
    if options.policy.lifetime_seconds is not None:
        arguments["lifetime"] = str(options.policy.lifetime_seconds)
    if options.sleep_ms:
        arguments["sleep_ms"] = str(options.sleep_ms)
    if options.shuffle:
        arguments["shuffle"] = "1"
    return arguments


def options_to_dict(options: ModeOptions) -> dict[str, Any]:
    """Plain mapping view used for logging."""

    data: dict[str, Any] = {"mode": options.mode.value}
    for item in fields(options):
        value = getattr(options, item.name)
        if isinstance(value, RetryPolicy):
            data["max_attempts"] = value.max_attempts
            data["lifetime"] = value.lifetime_seconds
        elif isinstance(value, ClaimFilters):
            data.update({name: list(values) for name, values in value.items()})
        else:
            data[item.name] = value
    return data


def _resolve_mode(mode: Mode | str | None, given: Mapping[str, Any]) -> Mode:
    if mode is None:
        return Mode.MASTER if "slave_count" in given else Mode.RUN
    try:
        return Mode(mode.lower() if isinstance(mode, str) else mode)
    except ValueError as error:
        raise ValidationError(f"Invalid mode: {mode}") from error


def _policy(given: Mapping[str, Any]) -> RetryPolicy:
    max_attempts = _int_option(given, "max_attempts", default=None, minimum=1)
    lifetime = _int_option(given, "lifetime", default=None, minimum=1)
    if max_attempts is None and lifetime is None:
        raise ValidationError(
            "Missing 'max_attempts' or 'lifetime'",
            code="MISSING_PARAMETER",
        )
    if max_attempts is not None and lifetime is not None:
        raise ValidationError(
            "The options 'max_attempts' and 'lifetime' are incompatible",
            code="INCONSISTENT_PARAMETERS",
        )
    return RetryPolicy(max_attempts=max_attempts, lifetime_seconds=lifetime)


def _int_option(
    given: Mapping[str, Any],
    name: str,
    *,
    default: int | None,
    minimum: int,
) -> Any:
    value = given.get(name)
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {name}: expected integer; found {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError) as error:
        raise ValidationError(f"Invalid {name}: expected integer; found {value!r}") from error
    if number < minimum:
        raise ValidationError(f"Invalid {name}: expected integer >= {minimum}; found {number}")
    return number


def _bool_option(given: Mapping[str, Any], name: str) -> bool:
    value = given.get(name, False)
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off", ""}:
        return False
    raise ValidationError(f"Invalid boolean value for {name}: {value!r}")


def _filters(given: Mapping[str, Any]) -> ClaimFilters:
    values: dict[str, tuple[str, ...] | None] = {}
    for name in ("data1", "data2", "data3"):
        value = given.get(name)
        if value is None:
            values[name] = None
            continue
        items = (value,) if isinstance(value, str) else tuple(str(item) for item in value)
        if not items:
            raise ValidationError(f"{name} must be non-empty")
        values[name] = items
    return ClaimFilters(**values)
