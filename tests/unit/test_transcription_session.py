"""Unit tests for TranscriptionSession."""

import asyncio

import pytest

from fortis.errors import AuthError, ConnectError, SendError
from fortis.models.audio import AudioChunk
from fortis.models.transcription import TranscriptKind
from fortis.transcription.session import ConnectionState, TranscriptionSession

from tests.fakes import FakeEndpoint


def make_chunk(sequence, session_id=1):
    return AudioChunk(capture_session_id=session_id, sequence_number=sequence,
                      data=bytes([sequence % 256]) * 3200, sample_rate=16000)


async def collect(session):
    return [event async for event in session.events()]


@pytest.mark.unit
class TestTranscriptionSession:
    """Test cases for TranscriptionSession."""

    def test_open_and_send(self, settings):
        async def scenario():
            endpoint = FakeEndpoint()
            session = TranscriptionSession(endpoint)
            await session.open(settings)
            for sequence in range(3):
                await session.send(make_chunk(sequence))
            await session.close()
            return session, endpoint

        session, endpoint = asyncio.run(scenario())

        assert endpoint.settings == settings
        assert [data[0] for data in endpoint.sent] == [0, 1, 2]
        assert session.chunks_sent == 3
        assert session.state is ConnectionState.CLOSED
        assert endpoint.closed

    def test_events_carry_offsets(self, settings):
        async def scenario():
            endpoint = FakeEndpoint()
            session = TranscriptionSession(endpoint)
            await session.open(settings)
            endpoint.push("hel")
            endpoint.push("hello")
            endpoint.push("hello world", is_final=True)
            endpoint.push("next")
            endpoint._drop()
            return session, await collect(session)

        session, events = asyncio.run(scenario())

        assert [(e.kind, e.text, e.start, e.end) for e in events] == [
            (TranscriptKind.PARTIAL, "hel", 0, 3),
            (TranscriptKind.PARTIAL, "hello", 0, 5),
            (TranscriptKind.FINAL, "hello world", 0, 11),
            (TranscriptKind.PARTIAL, "next", 12, 16),
        ]
        assert session.cursor == 11

    def test_base_offset(self, settings):
        async def scenario():
            endpoint = FakeEndpoint()
            session = TranscriptionSession(endpoint, base_offset=42)
            await session.open(settings)
            endpoint.push("resumed", is_final=True)
            endpoint._drop()
            return await collect(session)

        events = asyncio.run(scenario())
        assert (events[0].start, events[0].end) == (43, 50)

    def test_sequence_range_tracking(self, settings):
        async def scenario():
            endpoint = FakeEndpoint()
            session = TranscriptionSession(endpoint)
            await session.open(settings)
            events = session.events()
            for sequence in range(3):
                await session.send(make_chunk(sequence))
            endpoint.push("first", is_final=True)
            final = await events.__anext__()
            await session.send(make_chunk(3))
            endpoint.push("sec")
            partial = await events.__anext__()
            await events.aclose()
            return final, partial

        final, partial = asyncio.run(scenario())

        assert final.sequence_range == (0, 2)
        assert final.capture_session_id == 1
        assert partial.sequence_range == (3, 3)

    def test_stream_end_marks_disconnected(self, settings):
        async def scenario():
            endpoint = FakeEndpoint()
            session = TranscriptionSession(endpoint)
            await session.open(settings)
            endpoint._drop()
            await collect(session)
            return session

        session = asyncio.run(scenario())

        assert session.state is ConnectionState.DISCONNECTED
        assert session.disconnect_reason == "stream ended by endpoint"
        assert not session.is_open

    def test_events_consumed_once(self, settings):
        async def scenario():
            endpoint = FakeEndpoint()
            session = TranscriptionSession(endpoint)
            await session.open(settings)
            endpoint._drop()
            await collect(session)
            await collect(session)

        with pytest.raises(RuntimeError):
            asyncio.run(scenario())

    def test_send_when_not_open(self):
        async def scenario():
            session = TranscriptionSession(FakeEndpoint())
            await session.send(make_chunk(0))

        with pytest.raises(SendError):
            asyncio.run(scenario())

    def test_send_failure_marks_disconnected(self, settings):
        async def scenario():
            endpoint = FakeEndpoint()
            session = TranscriptionSession(endpoint)
            await session.open(settings)
            endpoint.closed = True
            with pytest.raises(SendError):
                await session.send(make_chunk(0))
            return session

        session = asyncio.run(scenario())
        assert session.state is ConnectionState.DISCONNECTED
        assert session.chunks_sent == 0

    def test_auth_error_propagates(self, settings):
        async def scenario():
            session = TranscriptionSession(FakeEndpoint(connect_error=AuthError("bad key")))
            try:
                await session.open(settings)
            finally:
                assert session.state is ConnectionState.CLOSED

        with pytest.raises(AuthError):
            asyncio.run(scenario())

    def test_connect_timeout(self, settings):
        endpoint = FakeEndpoint(connect_delay=1.0)

        async def scenario():
            session = TranscriptionSession(endpoint, connect_timeout=0.05)
            await session.open(settings)

        with pytest.raises(ConnectError, match="timed out"):
            asyncio.run(scenario())
        assert endpoint.closed

    def test_cancelled_open_closes_endpoint(self, settings):
        endpoint = FakeEndpoint(connect_delay=5.0)
        session = TranscriptionSession(endpoint, connect_timeout=10.0)

        async def scenario():
            task = asyncio.ensure_future(session.open(settings))
            await asyncio.sleep(0.05)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        asyncio.run(scenario())
        assert endpoint.closed
        assert session.state is ConnectionState.CLOSED

    def test_cannot_reopen(self, settings):
        async def scenario():
            session = TranscriptionSession(FakeEndpoint())
            await session.open(settings)
            await session.close()
            await session.open(settings)

        with pytest.raises(ConnectError):
            asyncio.run(scenario())

    def test_keep_alive(self, settings):
        async def scenario():
            endpoint = FakeEndpoint()
            session = TranscriptionSession(endpoint)
            await session.open(settings)
            await session.keep_alive()
            await session.keep_alive()
            return endpoint

        assert asyncio.run(scenario()).keep_alives == 2
