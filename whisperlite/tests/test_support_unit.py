import pytest

from whisperlite.analysis.recap import MAX_READING_LEVEL
from whisperlite.support.alerts import (
    DEFAULT_MESSAGES,
    AlertConfigError,
    TrustedAdult,
    send_alert,
    validate_trusted_adult,
)
from whisperlite.support.context_clues import DEFAULT_CLUES, ContextClueCatalog
from whisperlite.support.profiles import InMemoryProfileStore, TrustedAdultContact, normalize_profile


def test_catalog_lists_defaults() -> None:
    catalog = ContextClueCatalog()
    clues = catalog.list_clues()
    assert len(clues) == len(DEFAULT_CLUES) == 10
    assert clues[0].id == "default-1"


def test_catalog_filters_by_category_and_query() -> None:
    catalog = ContextClueCatalog()
    assert {clue.category for clue in catalog.list_clues(category="social")} == {"social"}
    assert [clue.id for clue in catalog.list_clues(q="BUSY")] == ["default-1"]
    assert catalog.list_clues(q="zzzz-no-match") == []


def test_catalog_unknown_category_falls_back_to_defaults() -> None:
    catalog = ContextClueCatalog()
    assert len(catalog.list_clues(category="astronomy")) == len(DEFAULT_CLUES)


def test_catalog_add_search_and_get() -> None:
    catalog = ContextClueCatalog()
    clue = catalog.add("  Break a leg ", "Good luck!", ["Before a play"], None)

    assert clue.phrase == "Break a leg"
    assert clue.category == "general"
    assert catalog.get(clue.id) == clue
    assert catalog.list_clues()[0].id == clue.id
    assert [found.id for found in catalog.search("good luck")] == [clue.id]


def test_catalog_validation_errors() -> None:
    catalog = ContextClueCatalog()
    with pytest.raises(ValueError, match="Search query is required"):
        catalog.search("  ")
    with pytest.raises(ValueError, match="Phrase and meaning are required"):
        catalog.add("phrase only", "")
    with pytest.raises(KeyError):
        catalog.get("missing")


def test_validate_trusted_adult_messages() -> None:
    message = validate_trusted_adult(TrustedAdult(name="Ms. Rivera", channel="email", address="rivera@school.org"))
    assert message == "Configuration valid for email alerts to Ms. Rivera"
    assert validate_trusted_adult(TrustedAdult(name="", channel="push", address="device-1")).endswith(
        "to trusted adult"
    )


@pytest.mark.parametrize(
    ("adult", "detail"),
    [
        (TrustedAdult("A", "fax", "123"), "Invalid channel. Must be sms, email, or push."),
        (TrustedAdult("A", "email", "not-an-email"), "Invalid email address"),
        (TrustedAdult("A", "sms", "12-34"), "Invalid phone number"),
        (TrustedAdult("A", "push", "   "), "Invalid trusted adult configuration"),
    ],
)
def test_validate_trusted_adult_rejects(adult: TrustedAdult, detail: str) -> None:
    with pytest.raises(AlertConfigError) as excinfo:
        validate_trusted_adult(adult)
    assert str(excinfo.value) == detail


def test_send_alert_is_simulated() -> None:
    result = send_alert(TrustedAdult("Mr. Lee", "sms", "+1 555 123 4567"))
    assert result.success is True
    assert result.message.startswith("[DEMO] SMS would be sent to Mr. Lee")
    assert result.to_wire()["channel"] == "sms"

    unknown = send_alert(TrustedAdult("X", "pager", "1"))
    assert unknown.to_wire() == {"success": False, "message": "Unknown channel"}
    assert len(DEFAULT_MESSAGES) == 3


def test_profile_normalization_clamps_and_defaults() -> None:
    profile = normalize_profile(
        "student_1",
        display_name="   ",
        age_range="20-25",
        reading_level_grade=99,
        sensitivity="extreme",
        focus_moments=-4,
        journal_prompts=["What went well?", "  "],
        role="admin",
    )

    assert profile.display_name == "Friend"
    assert profile.age_range == "13-15"
    assert profile.reading_level_grade == MAX_READING_LEVEL
    assert profile.sensitivity == "med"
    assert profile.focus_moments == 0
    assert profile.journal_prompts == ["What went well?"]
    assert profile.role == "student"
    assert normalize_profile("student_1", reading_level_grade=0).reading_level_grade == 7


def test_profile_store_keeps_created_at_and_counts_focus_moments() -> None:
    store = InMemoryProfileStore()
    assert store.get_or_default("new_student").display_name == "Friend"
    with pytest.raises(KeyError):
        store.get("new_student")
    with pytest.raises(KeyError):
        store.increment_focus_moments("new_student")

    first = store.upsert(normalize_profile("student_1", display_name="Ana"))
    second = store.upsert(normalize_profile("student_1", display_name="Ana B"))
    assert second.created_at == first.created_at
    assert second.display_name == "Ana B"

    assert store.increment_focus_moments("student_1") == 1
    assert store.increment_focus_moments("student_1", 3) == 4
    assert store.get("student_1").focus_moments == 4

    assert store.delete("student_1") is True
    assert store.delete("student_1") is False


def test_profile_store_returns_trusted_adult_for_alerts() -> None:
    store = InMemoryProfileStore()
    assert store.trusted_adult_for("student_1") is None

    contact = TrustedAdultContact(name=" Ms. Rivera ", channel="email", address=" rivera@school.example ")
    store.upsert(normalize_profile("student_1", trusted_adult=contact))

    assert store.trusted_adult_for("student_1") == TrustedAdult(
        name="Ms. Rivera", channel="email", address="rivera@school.example"
    )
