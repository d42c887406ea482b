from __future__ import annotations

from datetime import datetime, timezone

from chatcore.memory.actions import normalize_memory_actions
from chatcore.memory.matcher import find_memory_id_by_text, match_score, normalize_for_match
from chatcore.memory.types import Memory, MemoryAction
from chatcore.utils.json_extract import extract_first_balanced_object, extract_first_balanced_span

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _memory(memory_id: str, text: str) -> Memory:
    return Memory(id=memory_id, text=text, embedding=[1.0], created_at=NOW)


def test_extract_first_balanced_object_ignores_surrounding_prose():
    text = 'Sure! {"title":"web_search","arguments":{"query":"x"}} and then {"other":1}'

    assert extract_first_balanced_span(text) == '{"title":"web_search","arguments":{"query":"x"}}'
    assert extract_first_balanced_object(text) == {
        "title": "web_search",
        "arguments": {"query": "x"},
    }


def test_extract_first_balanced_object_failures_return_none():
    assert extract_first_balanced_object("") is None
    assert extract_first_balanced_object("no braces here") is None
    assert extract_first_balanced_object('{"open": {"never": "closed"}') is None
    assert extract_first_balanced_object("{not json}") is None


def test_extract_first_balanced_object_repairs_trailing_commas():
    assert extract_first_balanced_object('{"actions":[{"type":"create","text":"a"},],}') == {
        "actions": [{"type": "create", "text": "a"}]
    }


def test_extract_first_balanced_object_skips_braces_inside_strings():
    text = 'note {"text": "use } and { carefully", "n": 1} tail'
    assert extract_first_balanced_span(text) == '{"text": "use } and { carefully", "n": 1}'
    assert extract_first_balanced_object(text) == {"text": "use } and { carefully", "n": 1}

    escaped = r'{"text": "quote \" then }", "ok": true}'
    assert extract_first_balanced_object(escaped) == {"text": 'quote " then }', "ok": True}


def test_normalize_actions_list_shape():
    actions = normalize_memory_actions(
        {
            "actions": [
                {"type": "create", "text": "User likes tea."},
                {"type": "update", "match": "likes tea", "text": "User loves tea."},
                {"type": "delete", "memory": "User lives in Oslo."},
                {"type": "explode"},
                "garbage",
            ]
        }
    )

    assert actions == [
        MemoryAction(type="create", text="User likes tea."),
        MemoryAction(type="update", text="User loves tea.", match="likes tea"),
        MemoryAction(type="delete", match="User lives in Oslo."),
    ]


def test_normalize_actions_grouped_shape():
    actions = normalize_memory_actions(
        {
            "create": ["User is a nurse.", {"text": "User has a cat."}],
            "update": [{"target": "User has a cat.", "text": "User has two cats."}],
            "delete": ["User is a student."],
        }
    )

    assert [a.type for a in actions] == ["create", "create", "update", "delete"]
    assert actions[1].text == "User has a cat."
    assert actions[2].match == "User has a cat."
    assert actions[3].match == "User is a student."
    assert actions[3].id is None


def test_normalize_actions_unknown_shapes_yield_nothing():
    assert normalize_memory_actions(None) == []
    assert normalize_memory_actions([{"type": "create", "text": "x"}]) == []
    assert normalize_memory_actions({"memories": ["x"]}) == []


def test_normalize_for_match_collapses_case_and_whitespace():
    assert normalize_for_match("  User   LIKES\ttea ") == "user likes tea"
    assert normalize_for_match(None) == ""


def test_match_score_blends_overlap_and_substring():
    assert match_score("user likes tea", "user likes tea") == 1.0
    assert match_score("likes tea", "user likes tea a lot") == 1.0
    assert match_score("user likes coffee", "user likes tea") == 2 / 3
    assert match_score("", "anything") == 0.0


def test_find_memory_id_exact_match_ignores_case_and_whitespace():
    retrieved = [_memory("a", "User likes tea."), _memory("b", "User lives in Oslo.")]

    assert find_memory_id_by_text("  user LIVES in   oslo. ", retrieved) == "b"


def test_find_memory_id_best_fuzzy_candidate_above_threshold():
    retrieved = [
        _memory("a", "User likes green tea in the morning."),
        _memory("b", "User works as a nurse."),
    ]

    assert find_memory_id_by_text("likes green tea", retrieved) == "a"


def test_find_memory_id_unrelated_text_is_unresolved():
    retrieved = [_memory("a", "User likes tea."), _memory("b", "User lives in Oslo.")]

    assert find_memory_id_by_text("Quantum chromodynamics lecture", retrieved) is None
    assert find_memory_id_by_text("", retrieved) is None


def test_find_memory_id_threshold_is_tunable():
    retrieved = [_memory("a", "User likes tea.")]

    assert find_memory_id_by_text("user likes coffee", retrieved) == "a"
    assert find_memory_id_by_text("user likes coffee", retrieved, threshold=0.9) is None
