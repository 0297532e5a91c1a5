import threading
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace

import pytest

from app.core.config import Settings
from app.db.equipment import EQUIPMENT_FIELDS
from app.domain.imports import advisor as advisor_module
from app.domain.imports.advisor import (
    AdvisorSuggestion,
    AdvisorUnavailableError,
    AnthropicMappingAdvisor,
    KeywordMappingAdvisor,
    MappingAdvisor,
    build_mapping_advisor,
    request_suggestion,
)
from app.domain.imports.executor import execute_import


class StubAdvisor(MappingAdvisor):
    name = "stub"

    def __init__(self, suggestion):
        self.suggestion = suggestion
        self.calls = []

    def suggest(self, headers, preview_rows, catalog):
        self.calls.append((list(headers), list(preview_rows)))
        return self.suggestion


class FailingAdvisor(MappingAdvisor):
    name = "failing"

    def suggest(self, headers, preview_rows, catalog):
        raise AdvisorUnavailableError("service down")


class SlowAdvisor(MappingAdvisor):
    name = "slow"

    def __init__(self):
        self.release = threading.Event()

    def suggest(self, headers, preview_rows, catalog):
        self.release.wait(5)
        return AdvisorSuggestion(mapping={headers[0]: "name"}, confidence="high")


@pytest.fixture
def pool():
    executor = ThreadPoolExecutor(max_workers=2)
    yield executor
    executor.shutdown(wait=True)


def test_suggestion_within_wait_is_sanitized_and_applied(store, upload, pool):
    session = upload("Equipment,SN,Colour,Brand", "Pump,1,Red,Acme")
    advisor = StubAdvisor(
        AdvisorSuggestion(
            mapping={
                "Equipment": "name",
                "SN": "serial_number",
                "Colour": "paint_colour",
                "Brand": "name",
                "Not A Header": "model",
            },
            confidence="certain",
            notes="Brand looked like a name",
        )
    )

    updated = request_suggestion(store, session.handle, advisor, EQUIPMENT_FIELDS, 5, executor=pool)

    assert updated.suggested_mapping == {
        "Equipment": "name",
        "SN": "serial_number",
        "Colour": "__new__",
        "Brand": "__new__",
    }
    assert updated.advisor_confidence == "medium"
    assert updated.advisor_notes == "Brand looked like a name"
    assert advisor.calls[0][1] == [{"Equipment": "Pump", "SN": "1", "Colour": "Red", "Brand": "Acme"}]


def test_failing_advisor_falls_back_to_defaults(store, upload, pool):
    session = upload("Name,Serial", "Pump,1")

    updated = request_suggestion(store, session.handle, FailingAdvisor(), EQUIPMENT_FIELDS, 5, executor=pool)

    assert updated.suggested_mapping == {"Name": "__new__", "Serial": "__new__"}
    assert updated.advisor_confidence == "none"
    assert "service down" in updated.advisor_notes


def test_slow_advisor_times_out_and_late_result_is_discarded(store, upload, pool):
    session = upload("Name,Serial", "Pump,1")
    advisor = SlowAdvisor()

    updated = request_suggestion(store, session.handle, advisor, EQUIPMENT_FIELDS, 0.05, executor=pool)
    assert updated.advisor_confidence == "none"
    assert updated.suggested_mapping == {"Name": "__new__", "Serial": "__new__"}

    advisor.release.set()
    pool.shutdown(wait=True)

    current = store.get(session.handle)
    assert current.suggested_mapping == {"Name": "__new__", "Serial": "__new__"}
    assert current.advisor_confidence == "none"


@pytest.mark.parametrize("advisor_factory", [FailingAdvisor, SlowAdvisor])
def test_manual_mapping_executes_after_advisor_fallback(engine, store, upload, pool, advisor_factory):
    session = upload("Name,Serial", "Pump,SN-1", "Valve,SN-2")
    advisor = advisor_factory()

    updated = request_suggestion(store, session.handle, advisor, EQUIPMENT_FIELDS, 0.05, executor=pool)
    assert updated.advisor_confidence == "none"

    result = execute_import(engine, store, session.handle, {"Name": "name", "Serial": "serial_number"})
    if isinstance(advisor, SlowAdvisor):
        advisor.release.set()

    assert result.imported == 2
    assert result.errors == []
    assert result.imported + result.skipped + len(result.errors) == result.total_rows == 2


def test_disabled_advisor_keeps_defaults(store, upload):
    session = upload("Name", "Pump")

    updated = request_suggestion(store, session.handle, None, EQUIPMENT_FIELDS, 5)

    assert updated.suggested_mapping == {"Name": "__new__"}
    assert updated.advisor_confidence == "none"


def test_keyword_advisor_matches_common_headers():
    headers = ["Equipment Name", "Model #", "S/N", "serial_no", "Brand", "Room", "Notes", "Widget Color"]

    suggestion = KeywordMappingAdvisor().suggest(headers, [], EQUIPMENT_FIELDS)

    assert suggestion.mapping == {
        "Equipment Name": "name",
        "Model #": "model",
        "serial_no": "serial_number",
        "Brand": "manufacturer",
        "Room": "location",
        "Notes": "description",
    }
    assert suggestion.confidence == "medium"
    assert suggestion.notes == "Matched 6 of 8 columns by header keywords"


def test_keyword_advisor_with_no_matches_is_low_confidence():
    suggestion = KeywordMappingAdvisor().suggest(["Foo", "Bar"], [], EQUIPMENT_FIELDS)

    assert suggestion.mapping == {}
    assert suggestion.confidence == "low"


def test_anthropic_advisor_parses_json_from_response(monkeypatch):
    captured = {}

    class FakeChatAnthropic:
        def __init__(self, **kwargs):
            captured["kwargs"] = kwargs

        def invoke(self, messages):
            captured["prompt"] = messages[0].content
            return SimpleNamespace(
                content=[
                    {
                        "type": "text",
                        "text": 'Here you go:\n{"mappings": {"Asset": "name", "Tag": null}, '
                        '"confidence": "HIGH", "notes": "Tag is unclear"}',
                    }
                ]
            )

    monkeypatch.setattr(advisor_module, "ChatAnthropic", FakeChatAnthropic)
    advisor = AnthropicMappingAdvisor(api_key="test-key", model="claude-test", max_tokens=256, timeout=3)

    suggestion = advisor.suggest(
        ["Asset", "Tag"],
        [{"Asset": "Pump", "Tag": ""}, {"Asset": "Valve", "Tag": "T-9"}],
        EQUIPMENT_FIELDS,
    )

    assert suggestion.mapping == {"Asset": "name", "Tag": None}
    assert suggestion.confidence == "high"
    assert suggestion.notes == "Tag is unclear"
    assert captured["kwargs"]["model"] == "claude-test"
    assert captured["kwargs"]["temperature"] == 0
    assert 'Column: "Asset"\nSample values: Pump, Valve' in captured["prompt"]
    assert 'Column: "Tag"\nSample values: T-9' in captured["prompt"]
    assert "- serial_number:" in captured["prompt"]


def test_anthropic_advisor_rejects_unparseable_response():
    advisor = AnthropicMappingAdvisor(api_key="test-key", model="claude-test")

    with pytest.raises(AdvisorUnavailableError):
        advisor.parse_response("I could not decide.")


def test_anthropic_advisor_without_api_key_is_unavailable():
    advisor = AnthropicMappingAdvisor(api_key="", model="claude-test")

    with pytest.raises(AdvisorUnavailableError):
        advisor.suggest(["Name"], [], EQUIPMENT_FIELDS)


@pytest.mark.parametrize(
    "choice, expected",
    [("anthropic", AnthropicMappingAdvisor), ("keywords", KeywordMappingAdvisor), ("disabled", type(None))],
)
def test_build_mapping_advisor_follows_settings(choice, expected):
    settings = Settings(mapping_advisor=choice, anthropic_api_key="test-key")

    assert isinstance(build_mapping_advisor(settings), expected)
