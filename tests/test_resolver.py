"""Tests for concierge.resolver: target resolution over candidate snapshots."""

import json

import pytest

from concierge.classifier import ButtonChoice, ElementChoice
from concierge.errors import ClassifierUnavailable
from concierge.resolver import (
    CandidateElement,
    CandidateKind,
    ResolutionFailure,
    TargetResolver,
    build_prompt,
)

from conftest import FakeClassifier, element


class TestCandidateElement:
    """Test candidate serialization for prompts."""

    def test_prompt_dict_fields(self):
        c = element("email", "Email", CandidateKind.INPUT)
        d = c.to_prompt_dict()
        assert d["id"] == "email"
        assert d["text"] == "Email"
        assert d["type"] == "input"

    def test_long_button_markup_is_truncated(self):
        c = CandidateElement("ref:button-0", "Ok", "<button>" + "x" * 5000 + "</button>", CandidateKind.BUTTON)
        serialized = json.dumps(c.to_prompt_dict())
        assert len(serialized) < 2500

    def test_table_markup_is_kept_whole(self):
        rows = "".join(f"<tr><td>F-{i:03d}</td><td>$1{i}</td></tr>" for i in range(200))
        markup = f"<table>{rows}<tr><td>F-LATEST</td><td>$999</td></tr></table>"
        c = CandidateElement("ref:table-0", "", markup, CandidateKind.TABLE)

        assert c.to_prompt_dict()["html"] == markup
        assert "F-LATEST" in build_prompt([c], "Return the most recent invoice.")


class TestBuildPrompt:
    """Test prompt rendering."""

    def test_contains_instruction_and_candidates(self):
        prompt = build_prompt([element("email"), element("pass")], "Pick the password input.")
        assert "Pick the password input." in prompt
        assert "email" in prompt
        assert "pass" in prompt


class TestTargetResolver:
    """Test resolution outcomes."""

    @pytest.mark.asyncio
    async def test_resolves_valid_answer(self):
        classifier = FakeClassifier({"ElementChoice": {"elementId": "pass"}})
        resolver = TargetResolver(classifier)

        resolution = await resolver.resolve([element("email"), element("pass")], "password", ElementChoice)
        assert resolution.ok
        assert resolution.value.element_id == "pass"
        assert len(classifier.calls) == 1

    @pytest.mark.asyncio
    async def test_empty_candidates_short_circuit(self):
        classifier = FakeClassifier({"ElementChoice": {"elementId": "pass"}})
        resolver = TargetResolver(classifier)

        resolution = await resolver.resolve([], "password", ElementChoice)
        assert not resolution.ok
        assert resolution.failure == ResolutionFailure.NO_CANDIDATES
        assert classifier.calls == []

    @pytest.mark.asyncio
    async def test_invalid_answer_is_discarded(self):
        classifier = FakeClassifier({"ButtonChoice": {"text": "Ingresar"}})
        resolver = TargetResolver(classifier)

        resolution = await resolver.resolve([element("b", "Ingresar", CandidateKind.BUTTON)], "login", ButtonChoice)
        assert resolution.value is None
        assert resolution.failure == ResolutionFailure.INVALID_SCHEMA

    @pytest.mark.asyncio
    async def test_wrong_type_is_discarded(self):
        classifier = FakeClassifier({"ElementChoice": {"elementId": 42}})
        resolver = TargetResolver(classifier)

        resolution = await resolver.resolve([element("email")], "username", ElementChoice)
        assert resolution.failure == ResolutionFailure.INVALID_SCHEMA

    @pytest.mark.asyncio
    async def test_unavailable_classifier(self):
        classifier = FakeClassifier({"ElementChoice": ClassifierUnavailable("503")})
        resolver = TargetResolver(classifier)

        resolution = await resolver.resolve([element("email")], "username", ElementChoice)
        assert resolution.failure == ResolutionFailure.CLASSIFIER_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_no_retry_on_failure(self):
        classifier = FakeClassifier({"ElementChoice": [None, {"elementId": "email"}]})
        resolver = TargetResolver(classifier)

        resolution = await resolver.resolve([element("email")], "username", ElementChoice)
        assert not resolution.ok
        assert len(classifier.calls) == 1

    @pytest.mark.asyncio
    async def test_stats(self):
        classifier = FakeClassifier({"ElementChoice": [{"elementId": "email"}, None]})
        resolver = TargetResolver(classifier)
        await resolver.resolve([element("email")], "username", ElementChoice)
        await resolver.resolve([element("email")], "username", ElementChoice)
        await resolver.resolve([], "username", ElementChoice)

        stats = resolver.get_stats()
        assert stats["calls"] == 2
        assert stats["resolved"] == 1
        assert stats["invalid"] == 1
        assert stats["no_candidates"] == 1
