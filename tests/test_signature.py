"""Tests for chat-platform login payload verification."""

from __future__ import annotations

import hashlib
import hmac
import json
from urllib.parse import parse_qsl, urlencode

import pytest

from miniapp_identity.domain.errors import ReasonCode
from miniapp_identity.security.signature import (
    build_check_string,
    derive_secret_key,
    parse_init_data,
    serialize_field,
    sign_fields,
    verify_init_data,
)

from conftest import BOT_TOKEN, make_init_data

NOW = 1_700_000_000


def _tamper(init_data: str, key: str, value: str) -> str:
    fields = dict(parse_qsl(init_data, keep_blank_values=True))
    fields[key] = value
    return urlencode(fields)


def test_secret_key_is_hmac_of_bot_token_under_web_app_data():
    expected = hmac.new(b"WebAppData", BOT_TOKEN.encode(), hashlib.sha256).digest()
    assert derive_secret_key(BOT_TOKEN) == expected


def test_check_string_is_sorted_and_excludes_hash():
    fields = {"user": "{}", "hash": "abc", "auth_date": "1", "query_id": "q"}
    assert build_check_string(fields) == "auth_date=1\nquery_id=q\nuser={}"


def test_signing_is_deterministic():
    fields = {"auth_date": str(NOW), "user": '{"id":1}'}
    assert sign_fields(fields, BOT_TOKEN) == sign_fields(dict(fields), BOT_TOKEN)
    assert sign_fields(fields, BOT_TOKEN) != sign_fields(fields, BOT_TOKEN + "x")


def test_valid_payload_yields_user():
    result = verify_init_data(make_init_data(auth_date=NOW), BOT_TOKEN, now=NOW)
    assert result.ok
    assert result.reason is None
    assert result.user.id == 42
    assert result.user.username == "ada"
    assert result.auth_date == NOW
    assert result.query_id == "AAHdF6IQAAAAAN0XohDhrOrc"


def test_large_external_ids_survive_verification():
    payload = make_init_data({"id": 7_123_456_789_012}, auth_date=NOW)
    result = verify_init_data(payload, BOT_TOKEN, now=NOW)
    assert result.ok
    assert result.user.id == 7_123_456_789_012


@pytest.mark.parametrize(
    "field, value",
    [
        ("user", '{"id":43,"first_name":"Ada","username":"ada"}'),
        ("query_id", "other"),
    ],
)
def test_any_altered_field_breaks_signature(field, value):
    tampered = _tamper(make_init_data(auth_date=NOW), field, value)
    result = verify_init_data(tampered, BOT_TOKEN, now=NOW)
    assert not result.ok
    assert result.reason is ReasonCode.SIGNATURE_MISMATCH


def test_added_field_breaks_signature():
    tampered = make_init_data(auth_date=NOW) + "&start_param=ref"
    assert verify_init_data(tampered, BOT_TOKEN, now=NOW).reason is ReasonCode.SIGNATURE_MISMATCH


def test_wrong_bot_token_is_rejected():
    payload = make_init_data(auth_date=NOW, bot_token="999:other")
    assert verify_init_data(payload, BOT_TOKEN, now=NOW).reason is ReasonCode.SIGNATURE_MISMATCH


@pytest.mark.parametrize(
    "mangle",
    [str.upper, lambda value: f" {value}", lambda value: f"{value} "],
    ids=["uppercase", "leading-space", "trailing-space"],
)
def test_hash_must_match_exactly(mangle):
    fields = dict(parse_qsl(make_init_data(auth_date=NOW)))
    fields["hash"] = mangle(fields["hash"])
    result = verify_init_data(urlencode(fields), BOT_TOKEN, now=NOW)
    assert not result.ok
    assert result.reason is ReasonCode.SIGNATURE_MISMATCH


def test_single_hex_letter_case_flip_is_a_mismatch():
    fields = dict(parse_qsl(make_init_data(auth_date=NOW)))
    digest = fields["hash"]
    index = next(i for i, char in enumerate(digest) if char in "abcdef")
    fields["hash"] = digest[:index] + digest[index].upper() + digest[index + 1 :]
    assert verify_init_data(urlencode(fields), BOT_TOKEN, now=NOW).reason is ReasonCode.SIGNATURE_MISMATCH


def test_non_ascii_hash_is_a_mismatch_not_an_error():
    tampered = _tamper(make_init_data(auth_date=NOW), "hash", "é" * 64)
    assert verify_init_data(tampered, BOT_TOKEN, now=NOW).reason is ReasonCode.SIGNATURE_MISMATCH


@pytest.mark.parametrize("offset", [86400, -86400])
def test_window_boundary_is_inclusive(offset):
    payload = make_init_data(auth_date=NOW)
    assert verify_init_data(payload, BOT_TOKEN, now=NOW + offset).ok


@pytest.mark.parametrize("offset", [86401, -86401])
def test_window_exceeded_by_one_second_is_rejected(offset):
    payload = make_init_data(auth_date=NOW)
    result = verify_init_data(payload, BOT_TOKEN, now=NOW + offset)
    assert result.reason is ReasonCode.TEMPORAL_WINDOW_EXCEEDED
    assert result.auth_date == NOW


def test_window_check_precedes_signature_check():
    payload = make_init_data(auth_date=NOW, bot_token="999:other")
    result = verify_init_data(payload, BOT_TOKEN, now=NOW + 90_000)
    assert result.reason is ReasonCode.TEMPORAL_WINDOW_EXCEEDED


def test_custom_window():
    payload = make_init_data(auth_date=NOW)
    result = verify_init_data(payload, BOT_TOKEN, max_age_seconds=60, now=NOW + 61)
    assert result.reason is ReasonCode.TEMPORAL_WINDOW_EXCEEDED


@pytest.mark.parametrize(
    "payload",
    [
        "",
        "auth_date=1700000000&user=%7B%7D",
        "hash=abc&user=%7B%7D",
        "hash=abc&auth_date=yesterday",
    ],
)
def test_missing_or_unparseable_fields_are_malformed(payload):
    result = verify_init_data(payload, BOT_TOKEN, now=NOW)
    assert result.reason is ReasonCode.PAYLOAD_MALFORMED


def test_signed_payload_without_user_is_malformed():
    fields = {"auth_date": str(NOW), "query_id": "q"}
    fields["hash"] = sign_fields(fields, BOT_TOKEN)
    result = verify_init_data(urlencode(fields), BOT_TOKEN, now=NOW)
    assert result.reason is ReasonCode.PAYLOAD_MALFORMED


def test_signed_payload_with_invalid_user_json_is_malformed():
    fields = {"auth_date": str(NOW), "user": "{not json"}
    fields["hash"] = sign_fields(fields, BOT_TOKEN)
    result = verify_init_data(urlencode(fields), BOT_TOKEN, now=NOW)
    assert result.reason is ReasonCode.PAYLOAD_MALFORMED


def test_nested_values_escape_forward_slashes():
    user = {"id": 5, "photo_url": "https://cdn.example/u/5.jpg", "first_name": "Zoë"}
    rendered = serialize_field(user)
    assert "\\/" in rendered
    assert "Zoë" in rendered
    assert " " not in rendered
    assert json.loads(rendered) == user


def test_mapping_payload_verifies_against_url_encoded_signature():
    user = {"id": 5, "photo_url": "https://cdn.example/u/5.jpg", "first_name": "Zoë"}
    signed = dict(parse_qsl(make_init_data(user, auth_date=NOW)))
    decoded = {"auth_date": NOW, "query_id": signed["query_id"], "user": user, "hash": signed["hash"]}
    result = verify_init_data(decoded, BOT_TOKEN, now=NOW)
    assert result.ok
    assert result.user.photo_url == "https://cdn.example/u/5.jpg"


def test_parse_init_data_keeps_blank_values():
    assert parse_init_data("a=&b=1") == {"a": "", "b": "1"}
