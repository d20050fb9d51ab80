import uuid

import pytest

from bookmark_service.db import Bookmark
from bookmark_service.rules_engine import (
    BLOCKED_DOMAIN,
    CREATE_RULES,
    INPUT_INVALID,
    INVALID_LINK,
    LIST_RULES,
    UPDATE_RULES,
    BlockedDomain,
    BookmarkUpdate,
    Generic,
    InvalidLink,
    ValidationError,
    classify,
    evaluate,
    filter_operand,
    integer_range,
    is_url,
    link,
    one_of,
    prepare_create,
    prepare_guid,
    prepare_list,
    prepare_update,
    validate,
)


def _invalid(description: str) -> ValidationError:
    return ValidationError(INPUT_INVALID, description)


def test_evaluate_integer_range_coerces_strings() -> None:
    rule = integer_range(1)
    assert evaluate("limit", "5", rule) is None
    assert evaluate("limit", 5, rule) is None
    assert evaluate("limit", "0", rule) == Generic("must be greater than or equal to 1")
    assert evaluate("limit", "abc", rule) == Generic("is not a number")
    assert evaluate("limit", "1.5", rule) == Generic("must be an integer")
    assert evaluate("limit", True, rule) == Generic("is not a number")


def test_missing_optional_fields_are_valid() -> None:
    assert validate({}, LIST_RULES) == []
    assert validate({"limit": "", "offset": None, "sort_by": ""}, LIST_RULES) == []


def test_list_primitive_rule_reasons() -> None:
    errors = validate({"limit": "0", "offset": "-1", "sort_by": "link", "sort_dir": "up"}, LIST_RULES)
    assert errors == [
        _invalid("limit: must be greater than or equal to 1"),
        _invalid("offset: must be greater than or equal to 0"),
        _invalid("sort_by: only createdAt and favorites supported"),
        _invalid("sort_dir: only asc and desc supported"),
    ]


def test_sort_dir_is_case_insensitive() -> None:
    rule = one_of(("asc", "desc"), "only asc and desc supported", ignore_case=True)
    for value in ("asc", "DESC", "Desc"):
        assert evaluate("sort_dir", value, rule) is None


def test_errors_follow_rule_table_order_not_input_order() -> None:
    errors = validate({"sort_dir": "sideways", "limit": "many"}, LIST_RULES)
    assert [error.description.split(":")[0] for error in errors] == ["limit", "sort_dir"]


def test_favorites_filter_requires_filter_value() -> None:
    errors = validate({"filter": "favorites"}, LIST_RULES)
    assert errors == [_invalid("filter: filter_value must be set")]


def test_created_at_filter_requires_some_operand() -> None:
    errors = validate({"filter": "createdAt"}, LIST_RULES)
    assert errors == [_invalid("filter: filter_value or filter_to or filter_from must be set")]


def test_unknown_filter_field_rejected() -> None:
    errors = validate({"filter": "link", "filter_value": "1"}, LIST_RULES)
    assert errors[0] == _invalid("filter: only createdAt and favorites supported")


def test_filter_operand_without_filter() -> None:
    errors = validate({"filter_from": "10"}, LIST_RULES)
    assert errors == [_invalid("filter_from: filter field not set")]


def test_favorites_filter_rejects_range_operands_and_bad_values() -> None:
    errors = validate({"filter": "favorites", "filter_from": "1"}, LIST_RULES)
    assert errors == [
        _invalid("filter: filter_value must be set"),
        _invalid("filter_from: is unused, use filter_value with favorites filter"),
    ]

    errors = validate({"filter": "favorites", "filter_value": "yes"}, LIST_RULES)
    assert errors == [_invalid("filter_value: only true and false supported")]


def test_created_at_operands_must_be_integers() -> None:
    errors = validate({"filter": "createdAt", "filter_value": "yesterday"}, LIST_RULES)
    assert errors == [_invalid("filter_value: values of filter must be integer")]


def test_created_at_equality_and_range_are_exclusive() -> None:
    errors = validate({"filter": "createdAt", "filter_value": "5", "filter_to": "10"}, LIST_RULES)
    assert errors == [_invalid("filter_to: filter_value must be unset when doing range filter")]


def test_created_at_range_order_violation() -> None:
    errors = validate({"filter": "createdAt", "filter_from": "100", "filter_to": "50"}, LIST_RULES)
    assert errors == [_invalid("filter_from: filter range error: filter_from > filter_to")]


def test_range_compares_numbers_not_strings() -> None:
    # "9" > "10" as text, but 9 <= 10
    assert validate({"filter": "createdAt", "filter_from": "9", "filter_to": "10"}, LIST_RULES) == []
    assert validate({"filter": "createdAt", "filter_from": 50, "filter_to": "50"}, LIST_RULES) == []


def test_range_check_skipped_when_upper_bound_invalid() -> None:
    errors = validate({"filter": "createdAt", "filter_from": "10", "filter_to": "soon"}, LIST_RULES)
    assert errors == [_invalid("filter_to: values of filter must be integer")]


def test_integers_beyond_64_bits_are_rejected() -> None:
    assert validate({"limit": "99999999999999999999"}, LIST_RULES) == [_invalid("limit: is too large")]
    assert validate({"offset": str(2**63)}, LIST_RULES) == [_invalid("offset: is too large")]
    assert validate({"limit": str(2**63 - 1), "offset": str(2**63 - 1)}, LIST_RULES) == []

    errors = validate({"filter": "createdAt", "filter_from": "99999999999999999999"}, LIST_RULES)
    assert errors == [_invalid("filter_from: is too large")]
    errors = validate({"filter": "createdAt", "filter_value": "-99999999999999999999"}, LIST_RULES)
    assert errors == [_invalid("filter_value: is too small")]


def test_filter_operand_reads_siblings_from_snapshot() -> None:
    params = {"filter": "createdAt", "filter_to": "3"}
    assert evaluate("filter_from", "4", filter_operand, params) == Generic(
        "filter range error: filter_from > filter_to"
    )
    assert evaluate("filter_from", "2", filter_operand, params) is None


@pytest.mark.parametrize(
    "value, expected",
    [
        ("https://example.com", True),
        ("http://example.com/path?q=1#top", True),
        ("ftp://files.example.org/a.txt", True),
        ("http://93.184.216.34/", True),
        ("not a url", False),
        ("example.com", False),
        ("http://localhost:8000", False),
        ("mailto:someone@example.com", False),
        ("http://example.com:port", False),
        ("http://exa mple.com", False),
        ("http://-bad-.com", False),
        ("http://127.0.0.1/", False),
        ("http://10.0.0.5/admin", False),
        ("http://192.168.1.1", False),
        ("http://169.254.169.254/latest/meta-data", False),
        ("http://0.0.0.0:8080", False),
    ],
)
def test_is_url(value: str, expected: bool) -> None:
    assert is_url(value) is expected


def test_link_rule_required_and_allow_empty_modes() -> None:
    assert evaluate("link", "", link(allow_empty=False)) == InvalidLink()
    assert evaluate("link", None, link(allow_empty=False)) == InvalidLink()
    assert evaluate("link", "", link(allow_empty=True)) is None
    assert evaluate("link", "not a url", link(allow_empty=True)) == InvalidLink()
    assert evaluate("link", 42, link(allow_empty=True)) == InvalidLink()


def test_link_rule_blocks_exact_hostnames() -> None:
    rule = link(allow_empty=False)
    assert evaluate("link", "http://yahoo.com/x", rule) == BlockedDomain("yahoo.com")
    assert evaluate("link", "https://socket.io", rule) == BlockedDomain("socket.io")
    assert evaluate("link", "https://mail.yahoo.com", rule) is None
    assert evaluate("link", "https://yahoo.com.example.org", rule) is None


def test_link_rule_rejects_overlong_links() -> None:
    long_link = "https://example.com/" + "a" * 300
    assert evaluate("link", long_link, link(allow_empty=False)) == Generic("is too long (maximum is 256 characters)")


def test_classify_precedence() -> None:
    assert classify("link", [Generic("x"), BlockedDomain("a.com"), InvalidLink()]) == ValidationError(
        INVALID_LINK, "invalid link"
    )
    assert classify("link", [Generic("x"), BlockedDomain("yahoo.com")]) == ValidationError(
        BLOCKED_DOMAIN, '"yahoo.com" banned'
    )
    assert classify("limit", [Generic("first"), Generic("second")]) == _invalid("limit: first,second")


def test_create_link_classification() -> None:
    assert validate({"link": "http://yahoo.com/x"}, CREATE_RULES) == [
        ValidationError(BLOCKED_DOMAIN, '"yahoo.com" banned')
    ]
    assert validate({"link": "not a url"}, CREATE_RULES) == [ValidationError(INVALID_LINK, "invalid link")]
    assert validate({"link": "http://169.254.169.254/"}, CREATE_RULES) == [ValidationError(INVALID_LINK, "invalid link")]


def test_empty_link_only_allowed_on_update() -> None:
    assert validate({"link": ""}, CREATE_RULES) == [ValidationError(INVALID_LINK, "invalid link")]
    assert validate({}, CREATE_RULES) == [ValidationError(INVALID_LINK, "invalid link")]
    assert validate({"link": ""}, UPDATE_RULES) == []
    assert validate({}, UPDATE_RULES) == []


def test_write_rules_check_body_types() -> None:
    errors = validate({"link": "https://example.com", "description": 7, "favorites": "true"}, CREATE_RULES)
    assert errors == [
        _invalid("description: must be a string"),
        _invalid("favorites: only Boolean supported"),
    ]


def test_rule_tables_are_read_only() -> None:
    with pytest.raises(TypeError):
        LIST_RULES["extra"] = ()  # type: ignore[index]


def test_prepare_list_returns_predicate() -> None:
    outcome = prepare_list({"filter": "favorites", "filter_value": "true", "limit": "10"})
    assert outcome.ok is True
    predicate = outcome.value
    assert predicate.condition == {"favorites": {"eq": True}}
    assert predicate.limit == 10
    assert predicate.offset == 0
    assert predicate.order_by == ("createdAt", "asc")


def test_prepare_list_does_not_build_on_errors() -> None:
    outcome = prepare_list({"filter": "favorites"})
    assert outcome.ok is False
    assert outcome.value is None
    assert [error.code for error in outcome.errors] == [INPUT_INVALID]


def test_validation_and_building_do_not_mutate_params() -> None:
    params = {"filter": "createdAt", "filter_from": "10", "filter_to": "20", "sort_dir": "DESC"}
    snapshot = dict(params)
    first = prepare_list(params)
    second = prepare_list(params)
    assert params == snapshot
    assert first.errors == second.errors == []
    assert first.value == second.value
    assert validate(params, LIST_RULES) == []


def test_prepare_create_builds_record() -> None:
    fixed = uuid.UUID("0f8fad5b-d9cb-469f-a165-70867728950e")
    outcome = prepare_create(
        {"link": "https://example.com", "description": "home"},
        clock=lambda: 1547459442106,
        guid_factory=lambda: fixed,
    )
    assert outcome.ok is True
    assert outcome.value == Bookmark(
        guid=str(fixed),
        link="https://example.com",
        created_at=1547459442106,
        updated_at=1547459442106,
        description="home",
        favorites=False,
    )


def test_prepare_create_generates_uuid4() -> None:
    outcome = prepare_create({"link": "https://example.com", "favorites": True})
    assert uuid.UUID(outcome.value.guid).version == 4
    assert outcome.value.favorites is True
    assert outcome.value.created_at == outcome.value.updated_at


def test_prepare_update_collects_body_errors_before_path_errors() -> None:
    outcome = prepare_update("xyz", {"link": "not a url", "favorites": "yes"})
    assert outcome.errors == [
        ValidationError(INVALID_LINK, "invalid link"),
        _invalid("favorites: only Boolean supported"),
        _invalid("guid: invalid uuid"),
    ]


def test_prepare_update_builds_partial_fields() -> None:
    guid = "0F8FAD5B-D9CB-469F-A165-70867728950E"
    outcome = prepare_update(guid, {"link": "", "favorites": False, "description": "x"}, clock=lambda: 99)
    assert outcome.value == BookmarkUpdate(
        guid=guid.lower(),
        fields={"updatedAt": 99, "description": "x", "favorites": False},
    )


def test_prepare_guid() -> None:
    assert prepare_guid("xyz").errors == [_invalid("guid: invalid uuid")]
    # version 1 uuid
    assert prepare_guid("a8098c1a-f86e-11da-bd1a-00112444be1e").ok is False
    guid = str(uuid.uuid4())
    assert prepare_guid(guid.upper()).value == guid
