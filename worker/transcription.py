"""
Speech-to-text for processed videos.

Audio is extracted to a small mono MP3 and sent to one of two backends:

- ``groq``: Whisper large-v3 behind Groq's OpenAI-compatible HTTP API.
- ``local``: faster-whisper, loaded on first use and run in an executor.

Transcription is best effort. Any backend problem is logged and reported
as "no transcript"; it never fails the surrounding job, and it is never
retried.
"""

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import aiofiles
import httpx

from api.enums import TranscriptionStatus
from api.errors import EngineUnavailable, truncate_error
from api.models import TranscriptSegment
from config import Settings
from worker.transcoder import cleanup_ffmpeg_process

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"
AUDIO_EXTRACTION_TIMEOUT = 600.0


def format_timestamp(seconds: float) -> str:
    """
    Format seconds as a WebVTT timestamp (HH:MM:SS.mmm).

    The value is rounded to whole milliseconds before it is split into
    fields, so 59.9996 becomes 00:01:00.000 rather than 00:00:59.1000.
    """
    total_ms = max(0, int(round(seconds * 1000)))
    hours, rem = divmod(total_ms, 3600 * 1000)
    minutes, rem = divmod(rem, 60 * 1000)
    secs, ms = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{ms:03d}"


def generate_webvtt(segments: List[TranscriptSegment]) -> str:
    """Convert transcript segments to WebVTT, cues numbered from 1."""
    vtt = "WEBVTT\n\n"

    for i, segment in enumerate(segments):
        start = format_timestamp(segment.start)
        end = format_timestamp(segment.end)

        vtt += f"{i + 1}\n"
        vtt += f"{start} --> {end}\n"
        vtt += f"{segment.text}\n\n"

    return vtt


@dataclass
class TranscriptionResult:
    text: str
    vtt: str
    segments: List[TranscriptSegment] = field(default_factory=list)
    language: str = DEFAULT_LANGUAGE


def build_result(text: Optional[str], raw_segments, language: Optional[str]) -> TranscriptionResult:
    """Normalize a backend response into a TranscriptionResult."""
    segments = [
        TranscriptSegment(start=float(seg["start"]), end=float(seg["end"]), text=str(seg["text"]).strip())
        for seg in (raw_segments or [])
    ]
    if text is None:
        text = " ".join(s.text for s in segments)
    return TranscriptionResult(
        text=text.strip(),
        vtt=generate_webvtt(segments),
        segments=segments,
        language=language or DEFAULT_LANGUAGE,
    )


async def extract_audio(media_path: Path, audio_path: Path, timeout: float = AUDIO_EXTRACTION_TIMEOUT) -> None:
    """
    Extract mono 16 kHz 64 kbit/s MP3 audio for speech recognition.

    Raises:
        EngineUnavailable: If ffmpeg is missing, fails or times out
    """
    cmd = [
        "ffmpeg",
        "-y",
        "-i",
        str(media_path),
        "-vn",
        "-acodec",
        "libmp3lame",
        "-ar",
        "16000",
        "-ac",
        "1",
        "-b:a",
        "64k",
        str(audio_path),
    ]
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise EngineUnavailable("ffmpeg not found - required for audio extraction") from e

    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await cleanup_ffmpeg_process(process, "Audio extraction")
        raise EngineUnavailable(f"Audio extraction timed out after {timeout:.0f} seconds")

    if process.returncode != 0:
        detail = truncate_error(stderr.decode("utf-8", errors="ignore").strip())
        raise EngineUnavailable(f"ffmpeg audio extraction failed: {detail}")


class GroqBackend:
    """Whisper over Groq's OpenAI-compatible transcription endpoint."""

    name = "groq"

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.api_key = settings.groq_api_key
        self.api_url = settings.groq_api_url
        self.model = settings.transcription_model
        self.timeout = settings.transcription_timeout
        self._http_client = http_client

    def check_available(self) -> None:
        if not self.api_key:
            raise EngineUnavailable("GROQ_API_KEY not set")

    async def transcribe(self, audio_path: Path) -> TranscriptionResult:
        async with aiofiles.open(audio_path, "rb") as f:
            audio = await f.read()

        files = {"file": (audio_path.name, audio, "audio/mpeg")}
        data = {
            "model": self.model,
            "response_format": "verbose_json",
            "timestamp_granularities[]": "segment",
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        client = self._http_client or httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0))
        try:
            resp = await client.post(self.api_url, files=files, data=data, headers=headers)
        except httpx.TimeoutException as e:
            raise EngineUnavailable(f"Transcription request timed out after {self.timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise EngineUnavailable(f"Transcription request failed: {e}") from e
        finally:
            if self._http_client is None:
                await client.aclose()

        if resp.status_code != 200:
            raise EngineUnavailable(
                f"Transcription API returned HTTP {resp.status_code}: {truncate_error(resp.text, 200)}"
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise EngineUnavailable("Transcription API returned invalid JSON") from e

        try:
            return build_result(body.get("text"), body.get("segments"), body.get("language"))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise EngineUnavailable(f"Transcription API returned a malformed response: {e!r}") from e


class LocalWhisperBackend:
    """faster-whisper on the worker's own CPU."""

    name = "local"

    def __init__(self, settings: Settings) -> None:
        self.model_name = settings.whisper_model
        self.compute_type = settings.whisper_compute_type
        self.timeout = settings.transcription_timeout
        self.model = None

    def check_available(self) -> None:
        pass

    def load_model(self):
        """Load the Whisper model (lazy loading to save memory)."""
        if self.model is not None:
            return self.model

        logger.info(f"Loading Whisper model: {self.model_name}...")
        try:
            from faster_whisper import WhisperModel
        except ImportError as e:
            raise EngineUnavailable("faster-whisper is not installed (pip install allvideo[local])") from e

        self.model = WhisperModel(self.model_name, device="cpu", compute_type=self.compute_type)
        logger.info("Whisper model loaded")
        return self.model

    def _transcribe_sync(self, audio_path: Path) -> TranscriptionResult:
        model = self.load_model()
        segments, info = model.transcribe(str(audio_path), task="transcribe", beam_size=5, vad_filter=True)
        raw = [{"start": s.start, "end": s.end, "text": s.text} for s in segments]
        return build_result(None, raw, getattr(info, "language", None))

    async def transcribe(self, audio_path: Path) -> TranscriptionResult:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self._transcribe_sync, audio_path),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise EngineUnavailable(f"Transcription timed out after {self.timeout:.0f} seconds") from e
        except EngineUnavailable:
            raise
        except Exception as e:
            raise EngineUnavailable(f"Local transcription failed: {e}") from e


class TranscriptionEngine:
    """Front door used by the worker; picks the backend from settings."""

    def __init__(self, settings: Settings, backend=None) -> None:
        self.max_bytes = settings.transcription_max_bytes
        if backend is not None:
            self.backend = backend
        elif settings.transcription_backend == "local":
            self.backend = LocalWhisperBackend(settings)
        else:
            self.backend = GroqBackend(settings)

    async def run(self, media_path: Path) -> Tuple[str, Optional[TranscriptionResult]]:
        """
        Transcribe ``media_path`` and say how it went.

        Returns (transcription_status, result). The status is ``completed``
        with a result, ``skipped`` when the engine declined the input (no
        credentials, audio too large), or ``failed`` on backend errors.
        """
        try:
            self.backend.check_available()
        except EngineUnavailable as e:
            logger.info(f"Skipping transcription: {e.message}")
            return TranscriptionStatus.SKIPPED.value, None

        fd, temp_path = tempfile.mkstemp(suffix=".mp3", prefix="allvideo_transcribe_", dir=media_path.parent)
        audio_path = Path(temp_path)
        os.close(fd)

        try:
            await extract_audio(media_path, audio_path)

            size = audio_path.stat().st_size
            if size > self.max_bytes:
                logger.info(
                    f"Audio file too large ({size / (1024 * 1024):.1f}MB > "
                    f"{self.max_bytes / (1024 * 1024):.0f}MB), skipping transcription"
                )
                return TranscriptionStatus.SKIPPED.value, None

            logger.info(f"Sending {size / (1024 * 1024):.1f}MB of audio to {self.backend.name} backend")
            result = await self.backend.transcribe(audio_path)
            logger.info(f"Transcription complete: {len(result.text)} chars, {len(result.segments)} segments")
            return TranscriptionStatus.COMPLETED.value, result

        except EngineUnavailable as e:
            logger.warning(f"Transcription failed: {e.message}")
            return TranscriptionStatus.FAILED.value, None
        except Exception as e:
            logger.exception(f"Unexpected {self.backend.name} transcription error: {e}")
            return TranscriptionStatus.FAILED.value, None
        finally:
            try:
                audio_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to delete temp audio {audio_path}: {e}")

    async def transcribe(self, media_path: Path) -> Optional[TranscriptionResult]:
        """Transcript for ``media_path``, or None when none could be produced."""
        _, result = await self.run(media_path)
        return result
