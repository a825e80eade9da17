import pytest

from fakes import FakeElement, FakePage
from notebooklm_pool.answers import (
    SnapshotKind,
    StabilityTracker,
    WaitOptions,
    classify_snapshot,
    count_response_elements,
    get_latest_response_container,
    is_placeholder,
    snapshot_all_responses,
    snapshot_latest_response,
    wait_for_latest_answer,
)

RESPONSE = ".to-user-container .message-text-content"
FAST = dict(timeout_ms=300, poll_interval_ms=10, required_stable_polls=3)


def page_with_responses(*elements, thinking=False):
    elements_by_selector = {RESPONSE: list(elements)}
    if thinking:
        elements_by_selector["div.thinking-message"] = [FakeElement("Thinking")]
    return FakePage(elements_by_selector)


class TestClassifySnapshot:
    @pytest.mark.parametrize("text", [None, "", "   \n"])
    def test_empty(self, text):
        assert classify_snapshot(text) == SnapshotKind.EMPTY

    @pytest.mark.parametrize("text", ["Generating answer...", "Antwort wird erstellt …", "Getting the context"])
    def test_placeholder(self, text):
        assert classify_snapshot(text) == SnapshotKind.PLACEHOLDER

    def test_long_text_mentioning_placeholder_is_an_answer(self):
        text = "The report describes how the answer is being generated by the pipeline, " * 3
        assert not is_placeholder(text)
        assert classify_snapshot(text) == SnapshotKind.CANDIDATE

    def test_echo_ignores_case_and_whitespace(self):
        assert classify_snapshot("What  is X?\n", question="what is x?") == SnapshotKind.ECHO

    def test_known_answer(self):
        assert classify_snapshot("Old answer", ignore_texts=["old answer"]) == SnapshotKind.KNOWN

    def test_candidate(self):
        assert classify_snapshot("X is a letter.", question="What is X?") == SnapshotKind.CANDIDATE


class TestStabilityTracker:
    def test_requires_consecutive_identical_readings(self):
        tracker = StabilityTracker(required=3)
        assert not tracker.observe("a")
        assert not tracker.observe("a")
        assert not tracker.observe("ab")
        assert not tracker.observe("ab")
        assert tracker.observe("ab")


class TestWaitForLatestAnswer:
    @pytest.mark.asyncio
    async def test_returns_stable_answer(self):
        element = FakeElement(texts=["Generating answer...", "X is", "X is a", "X is a letter."])
        page = page_with_responses(element)

        answer = await wait_for_latest_answer(page, WaitOptions(question="What is X?", **FAST))
        assert answer == "X is a letter."

    @pytest.mark.asyncio
    async def test_echo_of_question_times_out(self):
        page = page_with_responses(FakeElement("What is X?"))

        answer = await wait_for_latest_answer(page, WaitOptions(question="What is X?", **FAST))
        assert answer is None

    @pytest.mark.asyncio
    async def test_placeholder_only_times_out(self):
        page = page_with_responses(FakeElement("Generating answer..."))
        assert await wait_for_latest_answer(page, **FAST) is None

    @pytest.mark.asyncio
    async def test_previous_answer_is_ignored(self):
        page = page_with_responses(FakeElement("Earlier answer"), FakeElement("Earlier answer"))
        answer = await wait_for_latest_answer(page, question="Next?", ignore_texts=["Earlier answer"], **FAST)
        assert answer is None

    @pytest.mark.asyncio
    async def test_latest_element_wins(self):
        page = page_with_responses(FakeElement("Earlier answer"), FakeElement("New answer"))
        answer = await wait_for_latest_answer(page, question="Next?", ignore_texts=["Earlier answer"], **FAST)
        assert answer == "New answer"

    @pytest.mark.asyncio
    async def test_waits_while_thinking(self):
        page = page_with_responses(FakeElement("Final answer"), thinking=True)
        assert await wait_for_latest_answer(page, **FAST) is None

        page.elements["div.thinking-message"][0].visible = False
        assert await wait_for_latest_answer(page, **FAST) == "Final answer"

    @pytest.mark.asyncio
    async def test_keyword_overrides_do_not_mutate_options(self):
        options = WaitOptions(question="q", **FAST)
        page = page_with_responses(FakeElement("Answer"))
        await wait_for_latest_answer(page, options, required_stable_polls=1)
        assert options.required_stable_polls == 3


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_snapshot_latest_response(self):
        page = page_with_responses(FakeElement("first"), FakeElement("  second  "))
        assert await snapshot_latest_response(page) == "second"
        assert await snapshot_latest_response(FakePage()) is None

    @pytest.mark.asyncio
    async def test_count_response_elements_counts_visible(self):
        page = page_with_responses(FakeElement("a"), FakeElement("b", visible=False), FakeElement("c"))
        assert await count_response_elements(page) == 2

    @pytest.mark.asyncio
    async def test_snapshot_all_responses(self):
        def container(text):
            return FakeElement(children={".message-text-content": [FakeElement(text)]})

        containers = [container("one"), container("two"), container("one"), FakeElement()]
        page = FakePage({".to-user-container": containers})

        assert await snapshot_all_responses(page) == ["one", "two"]
        assert await get_latest_response_container(page) is containers[-1]
        assert await get_latest_response_container(FakePage()) is None
