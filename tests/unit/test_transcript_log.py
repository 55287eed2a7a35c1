"""Unit tests for the transcript log and its reducer."""

import threading

import pytest

from fortis.errors import OutOfOrderError
from fortis.models.transcription import TranscriptEvent
from fortis.transcription.transcript_log import LogState, TranscriptLog, reduce_event


@pytest.mark.unit
class TestReduceEvent:
    """Test cases for the pure reducer."""

    def test_partial_replaces_partial(self):
        state, segment = reduce_event(LogState(), TranscriptEvent.partial("hel"))
        state, segment = reduce_event(state, TranscriptEvent.partial("hello"))

        assert segment is None
        assert state.partial.text == "hello"
        assert state.committed_count == 0

    def test_final_commits_and_clears_partial(self):
        state, _ = reduce_event(LogState(), TranscriptEvent.partial("hello"))
        state, segment = reduce_event(state, TranscriptEvent.final("hello world"))

        assert segment.text == "hello world"
        assert (segment.start, segment.end) == (0, 11)
        assert state.committed_end == 11
        assert state.committed_count == 1
        assert state.partial is None

    def test_empty_final_clears_partial_without_commit(self):
        state, _ = reduce_event(LogState(), TranscriptEvent.partial("um"))
        state, segment = reduce_event(state, TranscriptEvent.final(""))

        assert segment is None
        assert state.partial is None
        assert state.committed_count == 0

    def test_event_before_committed_end_rejected(self):
        state, _ = reduce_event(LogState(), TranscriptEvent.final("hello"))

        with pytest.raises(OutOfOrderError):
            reduce_event(state, TranscriptEvent.final("again", start=2))

    def test_does_not_mutate_input_state(self):
        original = LogState()
        reduce_event(original, TranscriptEvent.final("hello"))
        assert original == LogState()


@pytest.mark.unit
class TestTranscriptLog:
    """Test cases for TranscriptLog."""

    def test_partial_then_final_sequence(self):
        log = TranscriptLog()

        log.apply(TranscriptEvent.partial("hel"))
        assert log.snapshot().as_list() == ["hel"]
        log.apply(TranscriptEvent.partial("hello"))
        assert log.snapshot().as_list() == ["hello"]
        log.apply(TranscriptEvent.final("hello world"))

        snapshot = log.snapshot()
        assert snapshot.as_list() == ["hello world"]
        assert snapshot.partial is None
        assert len(log) == 1

    def test_committed_text_accumulates(self):
        log = TranscriptLog()
        log.append_final(TranscriptEvent.final("hello", start=0))
        log.append_final(TranscriptEvent.final("world", start=6))
        log.set_partial(TranscriptEvent.partial("and", start=12))

        snapshot = log.snapshot()
        assert snapshot.committed_text == "hello world"
        assert snapshot.text == "hello world and"
        assert [segment.start for segment in snapshot.segments] == [0, 6]
        assert log.committed_end == 11

    def test_offsets_index_committed_text(self):
        log = TranscriptLog()
        log.apply(TranscriptEvent.final("first part", start=0))
        log.apply(TranscriptEvent.final("second", start=11))
        log.apply(TranscriptEvent.final("third", start=18))

        snapshot = log.snapshot()

        assert snapshot.committed_text == "first part second third"
        for segment in snapshot.segments:
            assert snapshot.committed_text[segment.start:segment.end] == segment.text
        assert len(snapshot.committed_text) == log.committed_end

    def test_snapshot_is_stable_after_later_appends(self):
        log = TranscriptLog()
        log.apply(TranscriptEvent.final("one"))
        snapshot = log.snapshot()

        log.apply(TranscriptEvent.final("two", start=4))

        assert len(snapshot.segments) == 1
        assert snapshot.committed_text == "one"
        assert list(snapshot.segments)[0].text == "one"
        with pytest.raises(IndexError):
            snapshot.segments[1]
        assert len(log.snapshot().segments) == 2

    def test_snapshot_segment_view_slicing(self):
        log = TranscriptLog()
        for index, word in enumerate(["a", "b", "c"]):
            log.apply(TranscriptEvent.final(word, start=index))

        segments = log.snapshot().segments
        assert [segment.text for segment in segments[1:]] == ["b", "c"]
        assert segments[-1].text == "c"

    def test_out_of_order_leaves_log_unchanged(self):
        log = TranscriptLog()
        log.apply(TranscriptEvent.final("hello"))

        with pytest.raises(OutOfOrderError):
            log.apply(TranscriptEvent.partial("late", start=1))

        assert log.snapshot().as_list() == ["hello"]

    def test_wrong_kind_rejected(self):
        log = TranscriptLog()
        with pytest.raises(ValueError):
            log.append_final(TranscriptEvent.partial("x"))
        with pytest.raises(ValueError):
            log.set_partial(TranscriptEvent.final("x"))

    def test_clear_partial(self):
        log = TranscriptLog()
        log.apply(TranscriptEvent.partial("pending"))
        log.clear_partial()
        assert log.snapshot().partial is None

    def test_concurrent_readers_see_whole_segments(self):
        log = TranscriptLog()
        words = [f"w{i}" for i in range(300)]
        seen = []
        done = threading.Event()

        def reader():
            while not done.is_set():
                snapshot = log.snapshot()
                seen.append((len(snapshot.segments), snapshot.committed_text))

        thread = threading.Thread(target=reader)
        thread.start()
        offset = 0
        for word in words:
            start = offset + 1 if offset else 0
            log.apply(TranscriptEvent.final(word, start=start))
            offset = start + len(word)
        done.set()
        thread.join()

        for count, text in seen:
            assert text == " ".join(words[:count])
