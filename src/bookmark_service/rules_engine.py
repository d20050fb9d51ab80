from __future__ import annotations

import ipaddress
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Union
from urllib.parse import urlsplit

from .db import Bookmark
from .predicate import IntegerOutOfRange, QueryPredicate, build_predicate, is_blank, parse_integer

INPUT_INVALID = "BOOKMARKS_INPUT_INVALID"
INVALID_LINK = "BOOKMARKS_INVALID_LINK"
BLOCKED_DOMAIN = "BOOKMARKS_BLOCKED_DOMAIN"

SORTABLE_FIELDS = ("createdAt", "favorites")
SORT_DIRECTIONS = ("asc", "desc")
FILTER_OPERAND_NAMES = ("filter_value", "filter_from", "filter_to")
BLOCKED_HOSTNAMES = frozenset({"yahoo.com", "socket.io"})
URL_SCHEMES = frozenset({"http", "https", "ftp"})
MAX_LINK_LENGTH = 256

UUID_V4_PATTERN = re.compile(
    r"^[0-9A-F]{8}-[0-9A-F]{4}-4[0-9A-F]{3}-[89AB][0-9A-F]{3}-[0-9A-F]{12}$",
    re.IGNORECASE,
)
HOSTNAME_LABEL_PATTERN = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$", re.IGNORECASE)
TLD_PATTERN = re.compile(r"^(xn--[a-z0-9-]{2,59}|[a-z]{2,63})$", re.IGNORECASE)

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class InvalidLink:
    pass


@dataclass(slots=True, frozen=True)
class BlockedDomain:
    host: str


@dataclass(slots=True, frozen=True)
class Generic:
    reason: str


Failure = Union[InvalidLink, BlockedDomain, Generic]
Rule = Callable[[str, Any, Mapping[str, Any]], Union[Failure, None]]
RuleTable = Mapping[str, tuple[Rule, ...]]


@dataclass(slots=True, frozen=True)
class ValidationError:
    code: str
    description: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "description": self.description}


@dataclass(slots=True, frozen=True)
class BookmarkUpdate:
    guid: str
    fields: dict[str, Any]


@dataclass(slots=True)
class Outcome:
    """Either a non-empty ``errors`` list or the built ``value``."""

    errors: list[ValidationError] = field(default_factory=list)
    value: Any = None

    @property
    def ok(self) -> bool:
        return not self.errors


# -- primitive rules ------------------------------------------------------


def integer_range(minimum: int) -> Rule:
    def check(field_name: str, value: Any, params: Mapping[str, Any]) -> Failure | None:
        if is_blank(value):
            return None
        try:
            number = parse_integer(value)
        except ValueError as error:
            return Generic(str(error))
        if number < minimum:
            return Generic(f"must be greater than or equal to {minimum}")
        return None

    return check


def one_of(choices: tuple[Any, ...], message: str, *, ignore_case: bool = False) -> Rule:
    def check(field_name: str, value: Any, params: Mapping[str, Any]) -> Failure | None:
        if is_blank(value):
            return None
        candidate = value.lower() if ignore_case and isinstance(value, str) else value
        if isinstance(candidate, str) and candidate in choices:
            return None
        return Generic(message)

    return check


def strict_boolean(message: str) -> Rule:
    def check(field_name: str, value: Any, params: Mapping[str, Any]) -> Failure | None:
        if value is None or isinstance(value, bool):
            return None
        return Generic(message)

    return check


def text(field_name: str, value: Any, params: Mapping[str, Any]) -> Failure | None:
    if value is None or isinstance(value, str):
        return None
    return Generic("must be a string")


def uuid_v4(field_name: str, value: Any, params: Mapping[str, Any]) -> Failure | None:
    if isinstance(value, str) and UUID_V4_PATTERN.fullmatch(value):
        return None
    return Generic("invalid uuid")


def is_url(value: str) -> bool:
    if any(char.isspace() for char in value):
        return False
    try:
        parts = urlsplit(value)
        # port is parsed lazily and raises on garbage
        parts.port
    except ValueError:
        return False
    if parts.scheme.lower() not in URL_SCHEMES or not parts.hostname:
        return False
    host = parts.hostname
    try:
        address = ipaddress.IPv4Address(host)
    except ValueError:
        pass
    else:
        return address.is_global
    labels = host.split(".")
    if len(labels) < 2 or not TLD_PATTERN.fullmatch(labels[-1]):
        return False
    return all(HOSTNAME_LABEL_PATTERN.fullmatch(label) for label in labels[:-1])


# -- cross-field rules ----------------------------------------------------


def filter_field(field_name: str, value: Any, params: Mapping[str, Any]) -> Failure | None:
    if is_blank(value):
        return None
    if not isinstance(value, str) or value not in SORTABLE_FIELDS:
        return Generic("only createdAt and favorites supported")
    if value == "favorites" and is_blank(params.get("filter_value")):
        return Generic("filter_value must be set")
    if value == "createdAt" and all(is_blank(params.get(name)) for name in FILTER_OPERAND_NAMES):
        return Generic("filter_value or filter_to or filter_from must be set")
    return None


def filter_operand(field_name: str, value: Any, params: Mapping[str, Any]) -> Failure | None:
    """Check one of filter_value/filter_from/filter_to against ``filter``."""
    if is_blank(value):
        return None
    filter_name = params.get("filter")
    if is_blank(filter_name):
        return Generic("filter field not set")

    if filter_name == "favorites":
        if field_name != "filter_value":
            return Generic("is unused, use filter_value with favorites filter")
        if value not in ("true", "false"):
            return Generic("only true and false supported")
        return None

    try:
        number = parse_integer(value)
    except IntegerOutOfRange as error:
        return Generic(str(error))
    except ValueError:
        return Generic("values of filter must be integer")

    if field_name in ("filter_from", "filter_to") and not is_blank(params.get("filter_value")):
        return Generic("filter_value must be unset when doing range filter")

    upper = params.get("filter_to")
    if field_name == "filter_from" and not is_blank(upper):
        try:
            upper_number = parse_integer(upper)
        except ValueError:
            # filter_to reports its own failure
            return None
        if number > upper_number:
            return Generic("filter range error: filter_from > filter_to")
    return None


def link(*, allow_empty: bool) -> Rule:
    def check(field_name: str, value: Any, params: Mapping[str, Any]) -> Failure | None:
        if is_blank(value):
            return None if allow_empty else InvalidLink()
        if not isinstance(value, str) or not is_url(value):
            return InvalidLink()
        if len(value) > MAX_LINK_LENGTH:
            return Generic(f"is too long (maximum is {MAX_LINK_LENGTH} characters)")
        host = urlsplit(value).hostname
        if host in BLOCKED_HOSTNAMES:
            return BlockedDomain(host)
        return None

    return check


# -- rule tables ----------------------------------------------------------


def build_list_rules() -> RuleTable:
    return MappingProxyType(
        {
            "limit": (integer_range(1),),
            "offset": (integer_range(0),),
            "filter": (filter_field,),
            "filter_value": (filter_operand,),
            "filter_from": (filter_operand,),
            "filter_to": (filter_operand,),
            "sort_by": (one_of(SORTABLE_FIELDS, "only createdAt and favorites supported"),),
            "sort_dir": (one_of(SORT_DIRECTIONS, "only asc and desc supported", ignore_case=True),),
        }
    )


def build_write_rules(*, allow_empty_link: bool) -> RuleTable:
    return MappingProxyType(
        {
            "link": (link(allow_empty=allow_empty_link),),
            "description": (text,),
            "favorites": (strict_boolean("only Boolean supported"),),
        }
    )


def build_guid_rules() -> RuleTable:
    return MappingProxyType({"guid": (uuid_v4,)})


LIST_RULES = build_list_rules()
CREATE_RULES = build_write_rules(allow_empty_link=False)
UPDATE_RULES = build_write_rules(allow_empty_link=True)
GUID_RULES = build_guid_rules()


# -- evaluation and classification ----------------------------------------


def evaluate(
    field_name: str,
    value: Any,
    rule: Rule,
    params: Mapping[str, Any] | None = None,
) -> Failure | None:
    snapshot = params if isinstance(params, MappingProxyType) else MappingProxyType(dict(params or {}))
    return rule(field_name, value, snapshot)


def classify(field_name: str, failures: list[Failure]) -> ValidationError:
    if any(isinstance(failure, InvalidLink) for failure in failures):
        return ValidationError(INVALID_LINK, "invalid link")
    for failure in failures:
        if isinstance(failure, BlockedDomain):
            return ValidationError(BLOCKED_DOMAIN, f'"{failure.host}" banned')
    reasons = ",".join(failure.reason for failure in failures if isinstance(failure, Generic))
    return ValidationError(INPUT_INVALID, f"{field_name}: {reasons}")


def validate(params: Mapping[str, Any], rules: RuleTable) -> list[ValidationError]:
    """Run every rule of every field; one error per failing field, in table order."""
    snapshot = MappingProxyType(dict(params))
    errors: list[ValidationError] = []
    for field_name, field_rules in rules.items():
        value = snapshot.get(field_name)
        failures = [
            failure
            for rule in field_rules
            if (failure := evaluate(field_name, value, rule, snapshot)) is not None
        ]
        if failures:
            errors.append(classify(field_name, failures))
    return errors


# -- operations -----------------------------------------------------------


def current_millis() -> int:
    return int(time.time() * 1000)


def _log_rejection(operation: str, errors: list[ValidationError]) -> None:
    logger.debug(
        "validation_failed",
        extra={"operation": operation, "codes": [error.code for error in errors]},
    )


def prepare_list(params: Mapping[str, Any], rules: RuleTable = LIST_RULES) -> Outcome:
    errors = validate(params, rules)
    if errors:
        _log_rejection("list", errors)
        return Outcome(errors=errors)
    predicate: QueryPredicate = build_predicate(params)
    return Outcome(value=predicate)


def prepare_create(
    body: Mapping[str, Any],
    rules: RuleTable = CREATE_RULES,
    *,
    clock: Callable[[], int] = current_millis,
    guid_factory: Callable[[], uuid.UUID] = uuid.uuid4,
) -> Outcome:
    errors = validate(body, rules)
    if errors:
        _log_rejection("create", errors)
        return Outcome(errors=errors)
    now = clock()
    favorites = body.get("favorites")
    return Outcome(
        value=Bookmark(
            guid=str(guid_factory()),
            link=body["link"],
            created_at=now,
            updated_at=now,
            description=body.get("description"),
            favorites=bool(favorites) if favorites is not None else False,
        )
    )


def prepare_update(
    guid: Any,
    body: Mapping[str, Any],
    rules: RuleTable = UPDATE_RULES,
    *,
    clock: Callable[[], int] = current_millis,
) -> Outcome:
    errors = validate(body, rules) + validate({"guid": guid}, GUID_RULES)
    if errors:
        _log_rejection("update", errors)
        return Outcome(errors=errors)
    fields: dict[str, Any] = {"updatedAt": clock()}
    if not is_blank(body.get("link")):
        fields["link"] = body["link"]
    if body.get("description") is not None:
        fields["description"] = body["description"]
    if body.get("favorites") is not None:
        fields["favorites"] = body["favorites"]
    return Outcome(value=BookmarkUpdate(guid=guid.lower(), fields=fields))


def prepare_guid(guid: Any) -> Outcome:
    errors = validate({"guid": guid}, GUID_RULES)
    if errors:
        _log_rejection("lookup", errors)
        return Outcome(errors=errors)
    return Outcome(value=guid.lower())
