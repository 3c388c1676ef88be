"""
QR code recognition for the check-in station.

A ``ScanSession`` owns one frame source. The decoder is picked once when the
session opens: the source's own decoder if it has one, else zbar over the
raw pixel buffer. The loop pulls a frame, tries to decode it, and sleeps
until the next frame slot; a frame that fails to decode is simply skipped.
Only a refused camera ends a session with an error.
"""
from __future__ import annotations
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Protocol, Sequence

from PIL import Image

from .errors import CameraPermissionError, DomainError

logger = logging.getLogger(__name__)

SCAN_FPS = float(os.getenv("SCAN_FPS", "30"))


@dataclass(frozen=True)
class Frame:
    width: int
    height: int
    data: bytes  # packed pixels in ``mode``
    mode: str = "RGBA"

    def to_image(self) -> Image.Image:
        return Image.frombytes(self.mode, (self.width, self.height), self.data)


class Decoder(ABC):
    name = "decoder"

    @abstractmethod
    def decode(self, frame: Frame) -> Optional[str]:
        """Decoded text, or None if the frame holds no readable code."""


class FrameSource(Protocol):
    async def open(self) -> None: ...

    async def read_frame(self) -> Optional[Frame]: ...

    async def close(self) -> None: ...


class ZbarDecoder(Decoder):
    """Software fallback: zbar over an 8-bit greyscale copy of the frame."""
    name = "zbar"

    def __init__(self) -> None:
        # needs the `scan` extra and the zbar shared library
        from pyzbar import pyzbar
        self._pyzbar = pyzbar

    def decode(self, frame: Frame) -> Optional[str]:
        grey = frame.to_image().convert("L")
        results = self._pyzbar.decode(
            (grey.tobytes(), grey.width, grey.height),
            symbols=[self._pyzbar.ZBarSymbol.QRCODE],
        )
        for r in results:
            return r.data.decode("utf-8")
        return None


def select_decoder(
    source: FrameSource,
    software: Callable[[], Decoder] = ZbarDecoder,
) -> Decoder:
    native = getattr(source, "native_decoder", None)
    decoder = native() if callable(native) else None
    if decoder is not None:
        return decoder
    return software()


class ScanSession:
    def __init__(
        self, source: FrameSource, *,
        decoder: Optional[Decoder] = None,
        software: Callable[[], Decoder] = ZbarDecoder,
        fps: float = SCAN_FPS,
    ) -> None:
        self.source = source
        self.decoder = decoder
        self._software = software
        self.interval = 1.0 / fps if fps > 0 else 0.0
        self.active = False
        self.frames = 0
        self.misses = 0

    async def open(self) -> None:
        try:
            await self.source.open()
        except DomainError:
            raise
        except (PermissionError, OSError) as e:
            raise CameraPermissionError(str(e)) from e
        if self.decoder is None:
            self.decoder = select_decoder(self.source, self._software)
        logger.info(f"scan session open, decoder={self.decoder.name}")
        self.active = True

    async def close(self) -> None:
        if not self.active:
            return
        self.active = False
        await self.source.close()
        logger.info(
            f"scan session closed after {self.frames} frames "
            f"({self.misses} misses)"
        )

    async def __aenter__(self) -> "ScanSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _try_decode(self, frame: Frame) -> Optional[str]:
        self.frames += 1
        try:
            text = self.decoder.decode(frame)
        except Exception as e:
            logger.debug(f"frame {self.frames}: decode error {e!r}")
            text = None
        if not text:
            self.misses += 1
            return None
        return text.strip()

    async def next_code(self) -> Optional[str]:
        """Poll until a code is read; None once the session is closed."""
        while self.active:
            frame = await self.source.read_frame()
            if frame is not None:
                text = self._try_decode(frame)
                if text:
                    return text
            elif getattr(self.source, "exhausted", False):
                await self.close()
                break
            await asyncio.sleep(self.interval)
        return None

    async def codes(self) -> AsyncIterator[str]:
        while True:
            text = await self.next_code()
            if text is None:
                return
            yield text

    def start(self, on_code: Callable[[str], object]) -> asyncio.Task:
        """Run the loop as a task handing every code to ``on_code``.

        Cancel the task or close the session to stop it.
        """
        async def _loop() -> None:
            async for text in self.codes():
                result = on_code(text)
                if asyncio.iscoroutine(result):
                    await result
        return asyncio.create_task(_loop())


class ImageFileSource:
    """Frames replayed from image files, one per read."""

    def __init__(self, paths: Sequence[str], *, loop: bool = False) -> None:
        self.paths = list(paths)
        self.loop = loop
        self._frames: List[Frame] = []
        self._pos = 0

    async def open(self) -> None:
        frames = []
        for path in self.paths:
            try:
                with Image.open(path) as img:
                    rgba = img.convert("RGBA")
            except FileNotFoundError as e:
                raise CameraPermissionError(f"{path}: not found") from e
            frames.append(Frame(rgba.width, rgba.height, rgba.tobytes()))
        self._frames = frames
        self._pos = 0

    async def read_frame(self) -> Optional[Frame]:
        if not self._frames:
            return None
        if self._pos >= len(self._frames):
            if not self.loop:
                return None
            self._pos = 0
        frame = self._frames[self._pos]
        self._pos += 1
        return frame

    @property
    def exhausted(self) -> bool:
        return not self.loop and self._pos >= len(self._frames)

    async def close(self) -> None:
        self._frames = []


async def scan_and_check_in(session: ScanSession, engine):
    """Read one code and check the matching booking in."""
    text = await session.next_code()
    if text is None:
        return None
    return await engine.check_in_query(text)
