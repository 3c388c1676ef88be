"""Tests for the QR scanning loop.

Run with: pytest tests/test_scanner.py -v
"""

import asyncio

import pytest
from PIL import Image

from fieldday.errors import CameraPermissionError
from fieldday.model.inventory import WALK_ON
from fieldday.scanner import (
    Decoder, Frame, ImageFileSource, ScanSession, scan_and_check_in,
    select_decoder,
)


def _frame(tag: int = 0) -> Frame:
    return Frame(width=1, height=1, data=bytes([tag, 0, 0, 255]))


class FakeSource:
    """Hands out queued frames, then nothing."""

    def __init__(self, frames=(), deny=False, native=None):
        self.frames = list(frames)
        self.deny = deny
        self.native = native
        self.opened = False
        self.closed = False

    async def open(self):
        if self.deny:
            raise PermissionError("camera blocked")
        self.opened = True

    async def read_frame(self):
        return self.frames.pop(0) if self.frames else None

    async def close(self):
        self.closed = True

    def native_decoder(self):
        return self.native


class ScriptDecoder(Decoder):
    """Decodes by frame tag; tag 1 raises."""
    name = "script"

    def __init__(self, codes):
        self.codes = codes
        self.seen = 0

    def decode(self, frame):
        self.seen += 1
        tag = frame.data[0]
        if tag == 1:
            raise ValueError("corrupt frame")
        return self.codes.get(tag)


class TestDecoderSelection:
    """Strategy chosen once per session."""

    def test_native_decoder_preferred(self):
        """A source that ships a decoder uses it."""
        native = ScriptDecoder({})
        assert select_decoder(FakeSource(native=native),
                              software=lambda: pytest.fail("not used")) is native

    def test_software_fallback(self):
        """Without a native decoder the software one is built."""
        soft = ScriptDecoder({})
        assert select_decoder(FakeSource(), software=lambda: soft) is soft

    async def test_selected_at_open(self):
        """Opening the session fixes the decoder."""
        soft = ScriptDecoder({})
        session = ScanSession(FakeSource(), software=lambda: soft, fps=0)
        assert session.decoder is None
        await session.open()
        assert session.decoder is soft
        await session.close()


class TestScanLoop:
    """Polling until a code is read."""

    async def test_bad_frames_are_skipped(self):
        """Misses and decode errors just move on to the next frame."""
        source = FakeSource([_frame(0), _frame(1), _frame(2)])
        decoder = ScriptDecoder({2: " bk_123 "})
        async with ScanSession(source, decoder=decoder, fps=0) as session:
            assert await session.next_code() == "bk_123"
            assert session.misses == 2
            assert decoder.seen == 3
        assert source.closed

    async def test_denied_camera_is_fatal(self):
        """A refused device is the one error that stops the session."""
        session = ScanSession(FakeSource(deny=True), fps=0)
        with pytest.raises(CameraPermissionError):
            await session.open()
        assert not session.active

    async def test_close_stops_the_loop(self):
        """Closing ends polling and releases the device."""
        source = FakeSource()
        session = ScanSession(source, decoder=ScriptDecoder({}), fps=1000)
        await session.open()
        pending = asyncio.create_task(session.next_code())
        await asyncio.sleep(0.01)
        await session.close()
        assert await asyncio.wait_for(pending, 1.0) is None
        assert source.closed

    async def test_started_task_hands_over_codes(self):
        """The background task yields every decoded string."""
        source = FakeSource([_frame(2), _frame(0), _frame(3)])
        decoder = ScriptDecoder({2: "bk_a", 3: "bk_b"})
        session = ScanSession(source, decoder=decoder, fps=1000)
        await session.open()
        got = []
        done = asyncio.Event()

        async def on_code(text):
            got.append(text)
            if len(got) == 2:
                done.set()

        task = session.start(on_code)
        await asyncio.wait_for(done.wait(), 1.0)
        await session.close()
        await asyncio.wait_for(task, 1.0)
        assert got == ["bk_a", "bk_b"]


class TestImageFileSource:
    """Frames replayed from disk."""

    async def test_reads_each_image_once(self, tmp_path):
        """Frames come back as RGBA pixel buffers, then run out."""
        path = tmp_path / "gate.png"
        Image.new("RGB", (4, 3), (255, 0, 0)).save(path)
        source = ImageFileSource([str(path)])
        await source.open()
        frame = await source.read_frame()
        assert (frame.width, frame.height) == (4, 3)
        assert len(frame.data) == 4 * 3 * 4
        assert await source.read_frame() is None
        assert source.exhausted

    async def test_missing_file(self, tmp_path):
        """A missing image reads as an unavailable camera."""
        source = ImageFileSource([str(tmp_path / "nope.png")])
        with pytest.raises(CameraPermissionError):
            await source.open()

    async def test_exhausted_source_ends_session(self, tmp_path):
        """Nothing left to read closes the session."""
        path = tmp_path / "blank.png"
        Image.new("L", (2, 2), 255).save(path)
        session = ScanSession(ImageFileSource([str(path)]),
                              decoder=ScriptDecoder({}), fps=0)
        await session.open()
        assert await session.next_code() is None
        assert not session.active


class TestScanToCheckIn:
    """Decoded text goes through lookup and check-in."""

    async def test_scan_checks_booking_in(self, store, engine, make_event,
                                          make_profile):
        """A scanned booking id checks that booking in."""
        ev = await make_event()
        p = await make_profile()
        booking = await store.create_booking(
            event_id=ev.id, user_id=p.id, user_name=p.name,
            ticket_type=WALK_ON, qty=1, extras={}, total=2500,
            payment_reference="manual_x",
        )

        class IdDecoder(Decoder):
            def decode(self, frame):
                return booking.id

        session = ScanSession(FakeSource([_frame()]), decoder=IdDecoder(),
                              fps=0)
        await session.open()
        result = await scan_and_check_in(session, engine)
        await session.close()
        assert result.booking.id == booking.id
        assert not result.already_attended
