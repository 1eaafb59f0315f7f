"""
FFmpeg wrappers for the video processing stage.

Each HLS rung is encoded by its own ffmpeg process writing
``{name}.m3u8`` plus ``{name}_NNNN.ts`` into one output directory; the
master playlist is written afterwards from the rungs that succeeded.
Every subprocess runs with a timeout and is killed on any exit path.
"""

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from api.errors import TranscodeFailure, truncate_error
from config import (
    AUDIO_BITRATE,
    ENCODING_PRESET,
    ENCODING_PROFILE,
    HLS_GOP_SIZE,
    HLS_SEGMENT_DURATION,
    QUALITY_PRESETS,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]

# Maximum media duration accepted from ffprobe (1 week in seconds)
MAX_DURATION_SECONDS = 7 * 24 * 60 * 60

MASTER_PLAYLIST = "master.m3u8"
THUMBNAIL_NAME = "poster.jpg"

# Share of overall job progress spent encoding the ladder
TRANSCODE_PROGRESS_SPAN = 90


@dataclass
class ProbeResult:
    width: int
    height: int
    duration: float
    codec: str = "unknown"
    has_audio: bool = False


@dataclass
class HlsOutput:
    """What transcode_to_hls() produced inside the output directory."""

    width: int
    height: int
    duration: float
    renditions: List[str] = field(default_factory=list)
    master_playlist: str = MASTER_PLAYLIST


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize a duration reported by ffprobe.

    Raises:
        ValueError: If duration is missing, not a number, non-positive or absurdly long
    """
    if duration is None:
        raise ValueError("Could not determine media duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")

    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")

    if duration > MAX_DURATION_SECONDS:
        raise ValueError(f"Duration too long: {duration} seconds (max {MAX_DURATION_SECONDS})")

    return float(duration)


def bitrate_to_bps(value: str) -> int:
    """Convert an ffmpeg bitrate string ("800k", "5M", "128000") to bits per second."""
    value = value.strip().lower()
    if value.endswith("k"):
        return int(float(value[:-1]) * 1000)
    if value.endswith("m"):
        return int(float(value[:-1]) * 1000 * 1000)
    return int(value)


def select_renditions(source_height: int) -> List[dict]:
    """Ladder rungs no taller than the source, never empty."""
    qualities = [q for q in QUALITY_PRESETS if q["height"] <= source_height]
    if not qualities:
        # Source smaller than the lowest rung still gets one rendition
        qualities = [QUALITY_PRESETS[0]]
    return qualities


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """Kill a subprocess that is still running and reap it."""
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            # Exited between the returncode check and kill()
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def _run_with_timeout(cmd: List[str], timeout: float, context: str) -> bytes:
    """Run a short ffmpeg/ffprobe command and return its stdout."""
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise TranscodeFailure(f"{cmd[0]} not found on PATH") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await cleanup_ffmpeg_process(process, context)
        raise TranscodeFailure(f"{context} timed out after {timeout:.0f}s")

    if process.returncode != 0:
        detail = truncate_error(stderr.decode("utf-8", errors="ignore").strip())
        raise TranscodeFailure(f"{context} failed: {detail}")

    return stdout


async def probe(input_path: Path, timeout: float = 30.0) -> ProbeResult:
    """
    Read duration and frame size with ffprobe.

    Raises:
        TranscodeFailure: If ffprobe fails, times out, finds no video stream
            or reports an unusable duration
    """
    cmd = ["ffprobe", "-v", "quiet", "-print_format", "json", "-show_format", "-show_streams", str(input_path)]
    stdout = await _run_with_timeout(cmd, timeout, "ffprobe")

    try:
        data = json.loads(stdout.decode("utf-8", errors="ignore"))
    except json.JSONDecodeError as e:
        raise TranscodeFailure("ffprobe returned invalid JSON") from e

    streams = data.get("streams", [])
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    if not video_stream:
        raise TranscodeFailure("No video stream found")

    try:
        duration = validate_duration(data.get("format", {}).get("duration"))
    except ValueError as e:
        raise TranscodeFailure(str(e)) from e

    return ProbeResult(
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        duration=duration,
        codec=video_stream.get("codec_name", "unknown"),
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
    )


async def generate_thumbnail(input_path: Path, output_path: Path, timeout: float = 60.0) -> Path:
    """Grab the frame at one second, scaled to 640 px wide."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = [
        "ffmpeg",
        "-y",
        "-ss",
        "00:00:01",
        "-i",
        str(input_path),
        "-vframes",
        "1",
        "-vf",
        "scale=640:-1",
        str(output_path),
    ]
    await _run_with_timeout(cmd, timeout, "Thumbnail generation")
    return output_path


async def run_ffmpeg_with_progress(
    cmd: List[str],
    duration: float,
    timeout: float,
    progress_callback: Optional[ProgressCallback] = None,
    context: str = "FFmpeg",
) -> Tuple[bool, Optional[str]]:
    """
    Run an FFmpeg command with timeout and progress tracking.

    The command must include ``-progress pipe:1``; ``out_time_ms`` lines are
    turned into a 0-100 percentage of ``duration``.

    Returns:
        (success, error_message) where error_message is None on success.
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,  # stderr would fill the pipe and stall ffmpeg
    )

    last_progress = 0
    start_time = asyncio.get_running_loop().time()
    timed_out = False

    async def read_progress():
        nonlocal last_progress
        while True:
            line = await process.stdout.readline()
            if not line:
                break

            line_str = line.decode("utf-8", errors="ignore").strip()
            if not line_str.startswith("out_time_ms="):
                continue
            try:
                current_seconds = int(line_str.split("=")[1]) / 1000000.0
            except (ValueError, IndexError):
                continue
            if duration > 0:
                progress = min(100, int(current_seconds / duration * 100))
                if progress > last_progress:
                    last_progress = progress
                    if progress_callback:
                        await progress_callback(progress)

    async def timeout_killer():
        nonlocal timed_out
        await asyncio.sleep(timeout)
        timed_out = True
        logger.warning(f"{context} exceeded {timeout:.0f}s limit, killing")
        try:
            process.kill()
        except ProcessLookupError:
            pass

    timeout_task = asyncio.create_task(timeout_killer())
    try:
        await read_progress()
        await process.wait()
    finally:
        timeout_task.cancel()
        try:
            await timeout_task
        except asyncio.CancelledError:
            pass
        await cleanup_ffmpeg_process(process, context)

    if timed_out:
        elapsed = asyncio.get_running_loop().time() - start_time
        return False, f"{context} timed out after {elapsed:.0f} seconds (limit: {timeout:.0f}s)"

    if process.returncode != 0:
        return False, f"{context} exited with code {process.returncode}"

    return True, None


def build_rendition_command(input_path: Path, output_dir: Path, quality: dict, has_audio: bool = True) -> List[str]:
    name = quality["name"]
    cmd = [
        "ffmpeg",
        "-y",
        "-i",
        str(input_path),
        "-map",
        "0:v:0",
    ]
    if has_audio:
        cmd += ["-map", "0:a:0"]
    cmd += [
        "-c:v",
        "libx264",
        "-preset",
        ENCODING_PRESET,
        "-profile:v",
        ENCODING_PROFILE,
        "-crf",
        str(quality["crf"]),
        "-maxrate",
        quality["maxrate"],
        "-bufsize",
        quality["bufsize"],
        "-vf",
        f"scale=-2:{quality['height']}",
        "-g",
        str(HLS_GOP_SIZE),
        "-keyint_min",
        str(HLS_GOP_SIZE),
        "-sc_threshold",
        "0",
    ]
    if has_audio:
        cmd += ["-c:a", "aac", "-b:a", AUDIO_BITRATE, "-ac", "2"]
    cmd += [
        "-hls_time",
        str(HLS_SEGMENT_DURATION),
        "-hls_playlist_type",
        "vod",
        "-hls_segment_filename",
        str(output_dir / f"{name}_%04d.ts"),
        "-progress",
        "pipe:1",
        "-f",
        "hls",
        str(output_dir / f"{name}.m3u8"),
    ]
    return cmd


def output_width(quality: dict, source: ProbeResult) -> int:
    """Width ffmpeg produces for ``scale=-2:{height}``: aspect preserved, rounded to even."""
    if source.width <= 0 or source.height <= 0:
        return quality["width"]
    width = int(round(quality["height"] * source.width / source.height))
    return width + (width % 2)


def write_master_playlist(output_dir: Path, renditions: List[Dict[str, Any]]) -> Path:
    """
    Write master.m3u8 referencing each rendition playlist.

    Entries are sorted by bandwidth, highest first. Bandwidth is the video
    peak rate plus the audio rate.
    """
    entries = sorted(renditions, key=lambda r: r["bandwidth"], reverse=True)

    content = "#EXTM3U\n#EXT-X-VERSION:3\n\n"
    for entry in entries:
        content += f"#EXT-X-STREAM-INF:BANDWIDTH={entry['bandwidth']},RESOLUTION={entry['width']}x{entry['height']}\n"
        content += f"{entry['name']}.m3u8\n"

    path = output_dir / MASTER_PLAYLIST
    path.write_text(content)
    return path


async def transcode_to_hls(
    input_path: Path,
    output_dir: Path,
    timeout: float,
    progress_callback: Optional[ProgressCallback] = None,
    source: Optional[ProbeResult] = None,
) -> HlsOutput:
    """
    Encode the rendition ladder and write the master playlist.

    Progress reported through ``progress_callback`` covers the whole ladder
    and stays within 0-TRANSCODE_PROGRESS_SPAN, leaving the tail of the job
    for transcription and upload.

    Raises:
        TranscodeFailure: If probing fails or any rung fails to encode
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    if source is None:
        source = await probe(input_path)

    qualities = select_renditions(source.height)
    logger.info(
        f"Transcoding {input_path.name} ({source.width}x{source.height}, {source.duration:.1f}s) "
        f"to {[q['name'] for q in qualities]}"
    )

    rung_span = TRANSCODE_PROGRESS_SPAN / len(qualities)
    completed: List[Dict[str, Any]] = []

    for idx, quality in enumerate(qualities):
        base = idx * rung_span

        async def report(pct: int, base: float = base) -> None:
            if progress_callback:
                await progress_callback(int(base + pct * rung_span / 100))

        success, error = await run_ffmpeg_with_progress(
            build_rendition_command(input_path, output_dir, quality, source.has_audio),
            duration=source.duration,
            timeout=timeout,
            progress_callback=report,
            context=f"FFmpeg transcode {quality['name']}",
        )
        if not success:
            raise TranscodeFailure(f"Failed to transcode {quality['name']}: {error}")

        bandwidth = bitrate_to_bps(quality["maxrate"])
        if source.has_audio:
            bandwidth += bitrate_to_bps(AUDIO_BITRATE)
        completed.append(
            {
                "name": quality["name"],
                "width": output_width(quality, source),
                "height": quality["height"],
                "bandwidth": bandwidth,
            }
        )
        logger.info(f"Rendition {quality['name']} done")

    write_master_playlist(output_dir, completed)
    if progress_callback:
        await progress_callback(TRANSCODE_PROGRESS_SPAN)

    return HlsOutput(
        width=source.width,
        height=source.height,
        duration=source.duration,
        renditions=[c["name"] for c in completed],
    )
