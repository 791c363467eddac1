import pytest

from utils.event_names import (
    DOWNGRADE_EVENTS,
    EVENT_ALIASES,
    CanonicalEvent,
    extract_event_name,
    normalize_event,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("PURCHASE_APPROVED", CanonicalEvent.PURCHASE_APPROVED),
        ("purchase_approved", CanonicalEvent.PURCHASE_APPROVED),
        ("Purchase.Refunded", CanonicalEvent.PURCHASE_REFUNDED),
        ("PURCHASE_PROTEST", CanonicalEvent.PURCHASE_CHARGEBACK),
        ("PURCHASE_CANCELED", CanonicalEvent.PURCHASE_CANCELED),
        ("SUBSCRIPTION_CANCELLATION", CanonicalEvent.SUBSCRIPTION_CANCELED),
        ("payment.succeeded", CanonicalEvent.PURCHASE_APPROVED),
        ("  subscription.cancelled ", CanonicalEvent.SUBSCRIPTION_CANCELED),
        ("COMPRA_APROVADA", CanonicalEvent.PURCHASE_APPROVED),
    ],
)
def test_known_spellings(raw, expected):
    assert normalize_event(raw).kind is expected


def test_unknown_name_keeps_raw_for_diagnostics():
    ev = normalize_event("PURCHASE_DELAYED")
    assert ev.kind is CanonicalEvent.UNSUPPORTED
    assert ev.raw == "PURCHASE_DELAYED"
    assert not ev.supported


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_empty_names_are_unsupported(raw):
    assert normalize_event(raw).kind is CanonicalEvent.UNSUPPORTED


def test_alias_table_never_maps_to_unsupported():
    assert all(kind is not CanonicalEvent.UNSUPPORTED for kind in EVENT_ALIASES.values())


def test_downgrade_events():
    assert CanonicalEvent.PURCHASE_APPROVED not in DOWNGRADE_EVENTS
    assert CanonicalEvent.PURCHASE_CHARGEBACK in DOWNGRADE_EVENTS
    assert CanonicalEvent.SUBSCRIPTION_CANCELED in DOWNGRADE_EVENTS


class TestExtractEventName:
    def test_event_key(self):
        assert extract_event_name({"event": "PURCHASE_APPROVED"}) == "PURCHASE_APPROVED"

    def test_type_key(self):
        assert extract_event_name({"type": "payment.succeeded"}) == "payment.succeeded"

    def test_event_takes_precedence_over_type(self):
        assert extract_event_name({"type": "a", "event": "b"}) == "b"

    def test_missing_or_not_a_string(self):
        assert extract_event_name({}) == ""
        assert extract_event_name({"event": 5}) == ""
        assert extract_event_name(["event"]) == ""
