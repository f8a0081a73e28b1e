"""Incremental Server-Sent-Events decoding for chat-completion streams."""

from __future__ import annotations

import codecs
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Awaitable, Callable, Mapping, Optional, Union

logger = logging.getLogger(__name__)

DONE_TOKEN = "[DONE]"
_FRAME_DELIMITER = "\n\n"
_DATA_PREFIX = "data:"

ProgressCallback = Callable[[str], Union[None, Awaitable[None]]]
ChunkCheck = Callable[[], None]


@dataclass
class StreamMetrics:
    """Counters describing how a stream was consumed."""

    frames: int = 0
    content_fragments: int = 0
    dropped_frames: int = 0

    def record_drop(self, payload: str, exc: Exception) -> None:
        self.dropped_frames += 1
        logger.warning(
            "Skipping malformed SSE frame (%d chars): %s",
            len(payload),
            exc,
        )


@dataclass
class StreamResult:
    """Content reconstructed from a chat-completion stream."""

    content: str
    finish_reason: Optional[str] = None
    usage: Optional[dict[str, Any]] = None
    metrics: StreamMetrics = field(default_factory=StreamMetrics)


class SseDecoder:
    """Split an incoming text stream into SSE `data` payloads.

    Text is appended to an internal buffer; complete frames (terminated by a
    blank line) are returned from :meth:`feed` while any trailing partial frame
    is held until more text arrives or :meth:`flush` is called. The `[DONE]`
    terminator is dropped unless ``include_done`` is set.
    """

    def __init__(self, *, include_done: bool = False) -> None:
        self._buffer = ""
        self._pending_cr = False
        self._include_done = include_done

    @property
    def buffer(self) -> str:
        return self._buffer

    def feed(self, text: str) -> list[str]:
        if not text:
            return []
        self._buffer += self._normalize_newlines(text)
        frames = self._buffer.split(_FRAME_DELIMITER)
        self._buffer = frames.pop()
        return self._payloads(frames)

    def flush(self) -> list[str]:
        """Return payloads for whatever remains buffered at end of stream."""

        if self._pending_cr:
            self._pending_cr = False
            self._buffer += "\n"
        remaining = self._buffer
        self._buffer = ""
        if not remaining.strip():
            return []
        return self._payloads(remaining.split(_FRAME_DELIMITER))

    def _normalize_newlines(self, text: str) -> str:
        # A CR at the end of a chunk may be the first half of a CRLF pair.
        if self._pending_cr:
            text = "\r" + text
            self._pending_cr = False
        if text.endswith("\r"):
            text = text[:-1]
            self._pending_cr = True
        return text.replace("\r\n", "\n").replace("\r", "\n")

    def _payloads(self, frames: list[str]) -> list[str]:
        payloads: list[str] = []
        for frame in frames:
            payload = parse_frame(frame)
            if payload is None:
                continue
            if payload == DONE_TOKEN and not self._include_done:
                continue
            payloads.append(payload)
        return payloads


def parse_frame(frame: str) -> Optional[str]:
    """Return the joined `data:` payload of a single frame, or ``None``."""

    data_lines: list[str] = []
    for line in frame.split("\n"):
        if not line.startswith(_DATA_PREFIX):
            continue
        value = line[len(_DATA_PREFIX):]
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)
    if not data_lines:
        return None
    return "\n".join(data_lines).strip()


def _first_choice(chunk: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    return choice if isinstance(choice, Mapping) else None


async def _notify(callback: Optional[ProgressCallback], content: str) -> None:
    if callback is None:
        return
    result = callback(content)
    if inspect.isawaitable(result):
        await result


async def accumulate_content(
    chunks: AsyncIterable[Union[str, bytes]],
    *,
    on_progress: Optional[ProgressCallback] = None,
    metrics: Optional[StreamMetrics] = None,
    check: Optional[ChunkCheck] = None,
) -> StreamResult:
    """Concatenate every `choices[0].delta.content` fragment from a stream.

    Content stops accumulating at the first ``finish_reason == "stop"``; the
    rest of the stream is still read so the trailing usage frame is captured.
    ``check`` runs after every chunk and may raise to abort consumption (used
    for client-disconnect cancellation).
    """

    metrics = metrics or StreamMetrics()
    decoder = SseDecoder()
    utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
    parts: list[str] = []
    finish_reason: Optional[str] = None
    usage: Optional[dict[str, Any]] = None

    async def _consume(payloads: list[str]) -> None:
        nonlocal finish_reason, usage
        for payload in payloads:
            metrics.frames += 1
            try:
                chunk = json.loads(payload)
            except json.JSONDecodeError as exc:
                metrics.record_drop(payload, exc)
                continue
            if not isinstance(chunk, Mapping):
                continue
            if isinstance(chunk.get("usage"), Mapping):
                usage = dict(chunk["usage"])
            choice = _first_choice(chunk)
            if choice is None or finish_reason == "stop":
                continue
            delta = choice.get("delta")
            fragment = delta.get("content") if isinstance(delta, Mapping) else None
            if isinstance(fragment, str) and fragment:
                parts.append(fragment)
                metrics.content_fragments += 1
                if on_progress is not None:
                    await _notify(on_progress, "".join(parts))
            if choice.get("finish_reason"):
                finish_reason = str(choice["finish_reason"])

    async for chunk in chunks:
        text = utf8.decode(chunk) if isinstance(chunk, bytes) else chunk
        await _consume(decoder.feed(text))
        if check is not None:
            check()

    tail = utf8.decode(b"", final=True)
    await _consume(decoder.feed(tail) + decoder.flush())

    return StreamResult(
        content="".join(parts),
        finish_reason=finish_reason,
        usage=usage,
        metrics=metrics,
    )


__all__ = [
    "DONE_TOKEN",
    "SseDecoder",
    "StreamMetrics",
    "StreamResult",
    "accumulate_content",
    "parse_frame",
]
