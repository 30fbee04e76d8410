from __future__ import annotations

import base64
from datetime import datetime, timezone

import pytest

from turnstile.credentials import (
    CredentialCodec,
    CredentialError,
    InvalidSignatureError,
    MalformedPayloadError,
    SigningKeyring,
    TicketClaims,
    TicketClass,
    render_png,
    render_svg,
)
from turnstile.credentials.codec import MAX_PAYLOAD_BYTES


def _b64(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode("utf-8")).rstrip(b"=").decode("ascii")


def _replace_field(payload: str, index: int, value: str) -> str:
    parts = payload.split(".")
    parts[index] = value
    return ".".join(parts)


def test_issued_credential_decodes_to_same_claims(codec, claims):
    issued = codec.issue(claims)

    decoded = codec.decode(issued.payload)

    assert decoded == issued.credential
    assert decoded.ticket_id == "T1"
    assert decoded.event_id == "E1"
    assert decoded.holder_id == "U1"
    assert decoded.ticket_class is TicketClass.REGULAR
    assert decoded.issued_at == claims.issued_at


def test_payload_uses_versioned_dotted_layout(codec, claims):
    payload = codec.issue(claims).payload

    parts = payload.split(".")
    assert len(parts) == 8
    assert parts[0] == "TK1"
    assert parts[4] == "regular"
    assert parts[5] == str(int(claims.issued_at.timestamp()))
    assert len(parts[6]) == 22
    assert len(parts[7]) == 43


def test_decode_accepts_bytes_with_scanner_line_ending(codec, claims):
    issued = codec.issue(claims)

    assert codec.decode(issued.payload_bytes + b"\r\n") == issued.credential
    assert codec.decode(issued.payload + "\n") == issued.credential


def test_serialize_reproduces_the_issued_payload(codec, claims):
    issued = codec.issue(claims)

    assert codec.serialize(codec.decode(issued.payload)) == issued.payload


def test_unicode_identifiers_survive_encoding(codec):
    claims = TicketClaims(
        ticket_id="bilet-ğüş-1",
        event_id="konser.2026",
        holder_id="kullanıcı@example.com",
        ticket_class=TicketClass.VIP,
        issued_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )

    decoded = codec.decode(codec.issue(claims).payload)

    assert decoded.ticket_id == "bilet-ğüş-1"
    assert decoded.event_id == "konser.2026"
    assert decoded.holder_id == "kullanıcı@example.com"


def test_issuing_twice_uses_fresh_nonces(codec, claims):
    first = codec.issue(claims)
    second = codec.issue(claims)

    assert first.credential.nonce != second.credential.nonce
    assert first.payload != second.payload


def test_issue_truncates_to_whole_seconds_and_assumes_utc_for_naive_times(codec, claims):
    naive = TicketClaims(
        ticket_id="T1",
        event_id="E1",
        holder_id="U1",
        ticket_class=TicketClass.CHILD,
        issued_at=datetime(2026, 3, 14, 18, 30, 5, 987654),
    )

    credential = codec.issue(naive).credential

    assert credential.issued_at == datetime(2026, 3, 14, 18, 30, 5, tzinfo=timezone.utc)


@pytest.mark.parametrize("field", ["ticket_id", "event_id", "holder_id"])
def test_issue_rejects_empty_identifiers(codec, field):
    values = {"ticket_id": "T1", "event_id": "E1", "holder_id": "U1"}
    values[field] = ""
    claims = TicketClaims(
        ticket_class=TicketClass.REGULAR,
        issued_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        **values,
    )

    with pytest.raises(ValueError):
        codec.issue(claims)


def test_issue_rejects_payloads_over_the_size_limit(codec):
    claims = TicketClaims(
        ticket_id="T" * MAX_PAYLOAD_BYTES,
        event_id="E1",
        holder_id="U1",
        ticket_class=TicketClass.REGULAR,
        issued_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )

    with pytest.raises(ValueError):
        codec.issue(claims)


def test_any_single_byte_change_is_rejected(codec, claims):
    raw = codec.issue(claims).payload_bytes

    for index in range(len(raw)):
        tampered = bytearray(raw)
        tampered[index] ^= 0x01
        with pytest.raises(CredentialError):
            codec.decode(bytes(tampered))


def test_corrupted_event_id_fails_signature_check(codec, claims):
    payload = codec.issue(claims).payload

    with pytest.raises(InvalidSignatureError):
        codec.decode(_replace_field(payload, 2, _b64("E2")))


def test_changed_ticket_class_fails_signature_check(codec, claims):
    payload = codec.issue(claims).payload

    with pytest.raises(InvalidSignatureError):
        codec.decode(_replace_field(payload, 4, "vip"))


def test_credential_signed_with_foreign_key_is_rejected(codec, claims):
    foreign = CredentialCodec(SigningKeyring(active=b"f" * 32))
    payload = foreign.issue(claims).payload

    with pytest.raises(InvalidSignatureError):
        codec.decode(payload)


def test_retired_key_still_verifies_after_rotation(claims):
    old_key = b"o" * 32
    before_rotation = CredentialCodec(SigningKeyring(active=old_key))
    payload = before_rotation.issue(claims).payload

    after_rotation = CredentialCodec(SigningKeyring(active=b"n" * 32, retired=(old_key,)))

    assert after_rotation.decode(payload).ticket_id == "T1"
    assert after_rotation.issue(claims).payload != payload


@pytest.mark.parametrize(
    "mutate",
    [
        pytest.param(lambda p: "", id="empty"),
        pytest.param(lambda p: "\n", id="only-newline"),
        pytest.param(lambda p: p.rpartition(".")[0], id="missing-signature"),
        pytest.param(lambda p: p + ".extra", id="extra-field"),
        pytest.param(lambda p: _replace_field(p, 0, "TK2"), id="unknown-version"),
        pytest.param(lambda p: _replace_field(p, 1, p.split(".")[1] + "="), id="padded-base64"),
        pytest.param(lambda p: _replace_field(p, 1, ""), id="empty-ticket-id"),
        pytest.param(lambda p: _replace_field(p, 4, "REGULAR"), id="class-not-lowercase"),
        pytest.param(lambda p: _replace_field(p, 4, "staff"), id="unknown-class"),
        pytest.param(lambda p: _replace_field(p, 5, "0" + p.split(".")[5]), id="leading-zero-epoch"),
        pytest.param(lambda p: _replace_field(p, 5, "-1"), id="negative-epoch"),
        pytest.param(lambda p: _replace_field(p, 5, "999999999999"), id="epoch-past-year-9999"),
        pytest.param(lambda p: _replace_field(p, 6, p.split(".")[6][:-1]), id="short-nonce"),
        pytest.param(lambda p: _replace_field(p, 7, p.split(".")[7] + "A"), id="long-signature"),
        pytest.param(lambda p: p + "\n\n", id="two-line-endings"),
        pytest.param(lambda p: p.replace("TK1", "TK1é", 1), id="non-ascii"),
        pytest.param(lambda p: "A" * (MAX_PAYLOAD_BYTES + 1), id="oversized"),
    ],
)
def test_malformed_payloads_are_rejected_before_verification(codec, claims, mutate):
    payload = codec.issue(claims).payload

    with pytest.raises(MalformedPayloadError):
        codec.decode(mutate(payload))


def test_invalid_utf8_identifier_is_malformed(codec, claims):
    payload = codec.issue(claims).payload
    invalid = base64.urlsafe_b64encode(b"\xff\xfe").rstrip(b"=").decode("ascii")

    with pytest.raises(MalformedPayloadError):
        codec.decode(_replace_field(payload, 3, invalid))


def test_keyring_rejects_short_keys():
    with pytest.raises(ValueError):
        SigningKeyring(active=b"short")
    with pytest.raises(ValueError):
        SigningKeyring(active=b"k" * 32, retired=(b"short",))


def test_keyring_repr_does_not_leak_key_material(keyring):
    assert "kkkk" not in repr(keyring)
    assert "redacted" in repr(keyring)


def test_render_png_and_svg(codec, claims):
    payload = codec.issue(claims).payload

    png = render_png(payload, scale=4, border=1)
    svg = render_svg(payload)

    assert png.startswith(b"\x89PNG")
    assert b"<svg" in svg


def test_render_rejects_empty_payload():
    with pytest.raises(ValueError):
        render_png("")
