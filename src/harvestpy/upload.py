"""Streaming multipart uploads.

An upload runs as two concurrent stages joined by a small bounded pipe.
The encoder writes the multipart/form-data body into the pipe while the
transmitter sends whatever comes out of the other end as a chunked
request body, so a file is never held in memory as a whole.

If the transmitter fails, or gets its response before reading the whole
body, it keeps draining the pipe until the encoder has closed it;
otherwise the encoder would block forever on a full pipe.
If the encoder fails it closes the pipe with its error, which aborts the
request on the reading side.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import mimetypes
import os
import queue
import secrets
from collections.abc import (
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Iterable,
    Iterator,
    Mapping,
)
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import BinaryIO

import aiofiles
import httpx
from aiofiles.threadpool.binary import AsyncBufferedReader

from harvestpy.client_base import ClientConfig
from harvestpy.exceptions import HarvestUploadError

logger = logging.getLogger(__name__)

Transmit = Callable[[Iterable[bytes], str], httpx.Response]
AsyncTransmit = Callable[[AsyncIterable[bytes], str], Awaitable[httpx.Response]]

_EOF = object()


@dataclass(frozen=True)
class FilePart:
    """Binary part of an upload, read lazily from ``file``."""

    filename: str
    content_type: str
    file: BinaryIO | AsyncBufferedReader
    name: str = "receipt"


@dataclass(frozen=True)
class UploadJob:
    """Form fields, sent in insertion order, and an optional file."""

    fields: Mapping[str, str]
    file: FilePart | None = None


def _escape_quotes(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


class MultipartEncoder:
    """Incremental multipart/form-data encoder."""

    def __init__(self, boundary: str | None = None) -> None:
        """Initialize encoder.

        Args:
            boundary: Part boundary, a random one is generated if omitted
        """
        self.boundary = boundary or secrets.token_hex(30)

    @property
    def content_type(self) -> str:
        """Content-Type header value for the encoded body."""
        return f"multipart/form-data; boundary={self.boundary}"

    def _part_header(self, headers: list[tuple[str, str]], first: bool) -> bytes:
        delimiter = f"--{self.boundary}\r\n" if first else f"\r\n--{self.boundary}\r\n"
        lines = "".join(f"{key}: {value}\r\n" for key, value in headers)
        return f"{delimiter}{lines}\r\n".encode()

    def _head(self, job: UploadJob) -> Iterator[bytes]:
        """Yield the field parts and the file part header, if any."""
        first = True
        for name, value in job.fields.items():
            disposition = f'form-data; name="{_escape_quotes(name)}"'
            yield self._part_header([("Content-Disposition", disposition)], first)
            yield value.encode()
            first = False

        part = job.file
        if part is not None:
            disposition = (
                f'form-data; name="{_escape_quotes(part.name)}"; '
                f'filename="{_escape_quotes(part.filename)}"'
            )
            yield self._part_header(
                [("Content-Disposition", disposition), ("Content-Type", part.content_type)],
                first,
            )

    def _tail(self) -> bytes:
        return f"\r\n--{self.boundary}--\r\n".encode()

    def iter_encode(self, job: UploadJob, chunk_size: int) -> Iterator[bytes]:
        """Yield the encoded body of ``job`` piece by piece.

        The file is read ``chunk_size`` bytes at a time while iterating.
        """
        yield from self._head(job)
        if job.file is not None:
            while True:
                chunk = job.file.file.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        yield self._tail()

    async def aiter_encode(self, job: UploadJob, chunk_size: int) -> AsyncIterator[bytes]:
        """Async version of :meth:`iter_encode`.

        The file is read off the event loop, so a slow or large receipt
        does not stall other tasks.
        """
        for piece in self._head(job):
            yield piece
        if job.file is not None:
            read = _async_reader(job.file.file)
            while True:
                chunk = await read(chunk_size)
                if not chunk:
                    break
                yield chunk
        yield self._tail()


def _async_reader(file: BinaryIO | AsyncBufferedReader) -> Callable[[int], Awaitable[bytes]]:
    # aiofiles handles already read in a worker thread
    if inspect.iscoroutinefunction(file.read):
        return file.read
    return partial(asyncio.to_thread, file.read)


class Pipe:
    """Bounded in-memory byte pipe between one writer thread and one reader thread."""

    def __init__(self, max_chunks: int = ClientConfig.PIPE_MAX_CHUNKS) -> None:
        self._queue: queue.Queue[object] = queue.Queue(maxsize=max_chunks)
        self._closed = False
        # Reader side state
        self._finished = False
        self._error: BaseException | None = None

    def write(self, data: bytes) -> None:
        """Hand ``data`` to the reader, blocking while the pipe is full."""
        if self._closed:
            raise ValueError("write to closed pipe")
        if data:
            self._queue.put(data)

    def close(self, error: BaseException | None = None) -> None:
        """Close the writing end, optionally aborting the reader with ``error``."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(_EOF if error is None else error)

    def _end(self, item: object) -> bool:
        if item is _EOF:
            self._finished = True
        elif isinstance(item, BaseException):
            self._finished = True
            self._error = item
        return self._finished

    def __iter__(self) -> Iterator[bytes]:
        while not self._finished:
            item = self._queue.get()
            if self._end(item):
                break
            yield item  # type: ignore[misc]
        if self._error is not None:
            raise HarvestUploadError("Upload aborted by the encoder") from self._error

    def drain(self) -> int:
        """Discard everything until the writer closes the pipe.

        Returns:
            Number of bytes discarded
        """
        discarded = 0
        while not self._finished:
            item = self._queue.get()
            if not self._end(item):
                discarded += len(item)  # type: ignore[arg-type]
        return discarded


class AsyncPipe:
    """Bounded in-memory byte pipe between two asyncio tasks."""

    def __init__(self, max_chunks: int = ClientConfig.PIPE_MAX_CHUNKS) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max_chunks)
        self._closed = False
        self._finished = False
        self._error: BaseException | None = None

    async def write(self, data: bytes) -> None:
        """Hand ``data`` to the reader, waiting while the pipe is full."""
        if self._closed:
            raise ValueError("write to closed pipe")
        if data:
            await self._queue.put(data)

    async def close(self, error: BaseException | None = None) -> None:
        """Close the writing end, optionally aborting the reader with ``error``."""
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_EOF if error is None else error)

    def _end(self, item: object) -> bool:
        if item is _EOF:
            self._finished = True
        elif isinstance(item, BaseException):
            self._finished = True
            self._error = item
        return self._finished

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while not self._finished:
            item = await self._queue.get()
            if self._end(item):
                break
            yield item  # type: ignore[misc]
        if self._error is not None:
            raise HarvestUploadError("Upload aborted by the encoder") from self._error

    async def drain(self) -> int:
        """Discard everything until the writer closes the pipe."""
        discarded = 0
        while not self._finished:
            item = await self._queue.get()
            if not self._end(item):
                discarded += len(item)  # type: ignore[arg-type]
        return discarded


class UploadPipeline:
    """Runs an encoder thread and a transmitter thread for one upload."""

    def __init__(
        self,
        chunk_size: int = ClientConfig.UPLOAD_CHUNK_SIZE,
        max_chunks: int = ClientConfig.PIPE_MAX_CHUNKS,
    ) -> None:
        """Initialize upload pipeline.

        Args:
            chunk_size: Bytes read from the file at a time
            max_chunks: Number of chunks the pipe holds before the encoder blocks
        """
        self.chunk_size = chunk_size
        self.max_chunks = max_chunks

    def run(
        self,
        job: UploadJob,
        transmit: Transmit,
        *,
        boundary: str | None = None,
    ) -> httpx.Response:
        """Encode and send ``job``, returning the transmitter's response.

        Args:
            job: Fields and file to upload
            transmit: Sends a body iterable with the given content type and
                returns the response, raising on failure
            boundary: Multipart boundary, random if omitted

        Raises:
            The encoder's exception if it failed, otherwise the
            transmitter's
        """
        encoder = MultipartEncoder(boundary)
        pipe = Pipe(self.max_chunks)

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="harvest-upload") as executor:
            encoding = executor.submit(self._encode, encoder, job, pipe)
            transmitting = executor.submit(self._transmit, transmit, encoder, pipe)

        encode_error = encoding.exception()
        if encode_error is not None:
            raise encode_error
        return transmitting.result()

    def _encode(self, encoder: MultipartEncoder, job: UploadJob, pipe: Pipe) -> None:
        try:
            for chunk in encoder.iter_encode(job, self.chunk_size):
                pipe.write(chunk)
        except Exception as e:
            logger.warning("Upload encoder failed: %s", e)
            pipe.close(e)
            raise
        pipe.close()

    def _transmit(self, transmit: Transmit, encoder: MultipartEncoder, pipe: Pipe) -> httpx.Response:
        try:
            response = transmit(pipe, encoder.content_type)
        except Exception as e:
            logger.warning("Upload transmitter failed: %s", e)
            discarded = pipe.drain()
            logger.debug("Discarded %d unsent bytes", discarded)
            raise
        discarded = pipe.drain()
        if discarded:
            logger.debug("Response arrived before the body was sent, discarded %d bytes", discarded)
        logger.debug("Upload finished with status %d", response.status_code)
        return response


class AsyncUploadPipeline:
    """Runs an encoder task and a transmitter task for one upload."""

    def __init__(
        self,
        chunk_size: int = ClientConfig.UPLOAD_CHUNK_SIZE,
        max_chunks: int = ClientConfig.PIPE_MAX_CHUNKS,
    ) -> None:
        self.chunk_size = chunk_size
        self.max_chunks = max_chunks

    async def run(
        self,
        job: UploadJob,
        transmit: AsyncTransmit,
        *,
        boundary: str | None = None,
    ) -> httpx.Response:
        """Encode and send ``job``, see :meth:`UploadPipeline.run`."""
        encoder = MultipartEncoder(boundary)
        pipe = AsyncPipe(self.max_chunks)

        encoded, transmitted = await asyncio.gather(
            self._encode(encoder, job, pipe),
            self._transmit(transmit, encoder, pipe),
            return_exceptions=True,
        )
        if isinstance(encoded, BaseException):
            raise encoded
        if isinstance(transmitted, BaseException):
            raise transmitted
        return transmitted

    async def _encode(self, encoder: MultipartEncoder, job: UploadJob, pipe: AsyncPipe) -> None:
        try:
            async for chunk in encoder.aiter_encode(job, self.chunk_size):
                await pipe.write(chunk)
        except Exception as e:
            logger.warning("Upload encoder failed: %s", e)
            await pipe.close(e)
            raise
        await pipe.close()

    async def _transmit(
        self, transmit: AsyncTransmit, encoder: MultipartEncoder, pipe: AsyncPipe
    ) -> httpx.Response:
        try:
            response = await transmit(pipe, encoder.content_type)
        except Exception as e:
            logger.warning("Upload transmitter failed: %s", e)
            discarded = await pipe.drain()
            logger.debug("Discarded %d unsent bytes", discarded)
            raise
        discarded = await pipe.drain()
        if discarded:
            logger.debug("Response arrived before the body was sent, discarded %d bytes", discarded)
        logger.debug("Upload finished with status %d", response.status_code)
        return response


@contextmanager
def prepare_receipt(
    file: Path | str | BinaryIO | None,
    filename: str | None = None,
    content_type: str | None = None,
) -> Iterator[FilePart | None]:
    """Prepare a file for a streaming upload.

    Paths are opened for the duration of the ``with`` block; file-like
    objects are used as they are and left open.

    Args:
        file: File path, file path string, binary file object or None
        filename: Optional filename override
        content_type: Optional content type, guessed from the filename if omitted
    """
    if file is None:
        yield None
        return

    if isinstance(file, (Path, str)):
        file_path = Path(file)
        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        actual_filename = filename or file_path.name
        with open(file_path, "rb") as f:
            yield FilePart(actual_filename, content_type or _guess_type(actual_filename), f)
    else:
        name = getattr(file, "name", None)
        actual_filename = filename or (os.path.basename(name) if isinstance(name, str) else "receipt")
        yield FilePart(actual_filename, content_type or _guess_type(actual_filename), file)


@asynccontextmanager
async def aprepare_receipt(
    file: Path | str | BinaryIO | AsyncBufferedReader | None,
    filename: str | None = None,
    content_type: str | None = None,
) -> AsyncIterator[FilePart | None]:
    """Async version of :func:`prepare_receipt`.

    Paths are opened with aiofiles; file objects are read in a worker thread.
    """
    if not isinstance(file, (Path, str)):
        with prepare_receipt(file, filename, content_type) as part:
            yield part
        return

    file_path = Path(file)
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    actual_filename = filename or file_path.name
    async with aiofiles.open(file_path, "rb") as f:
        yield FilePart(actual_filename, content_type or _guess_type(actual_filename), f)


def _guess_type(filename: str) -> str:
    return mimetypes.guess_type(filename)[0] or "application/octet-stream"
