"""FFmpeg command building, publish endpoints and encoder probing."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Literal

import asyncio
import logging
import re


log = logging.getLogger(__name__)

Platform = Literal["youtube", "twitch", "facebook", "custom"]

# Ingest base URLs by platform
_PLATFORM_RTMP_URLS: dict[str, str] = {
    "youtube": "rtmp://a.rtmp.youtube.com/live2",
    "twitch": "rtmp://live.twitch.tv/app",
    "facebook": "rtmps://live-api-s.facebook.com:443/rtmp",
}
_FALLBACK_RTMP_URL = "rtmp://localhost:1935/live"

# Encoder defaults when the target leaves a value unset
_DEFAULT_BITRATE_KBPS = 2500
_DEFAULT_FRAMERATE = 30
_AUDIO_BITRATE = "128k"
_AUDIO_SAMPLE_RATE = "44100"

ORIGINAL_RESOLUTION = "original"
_RESOLUTION_RE = re.compile(r"^(\d+)x(\d+)$")
_VERSION_RE = re.compile(r"ffmpeg version (\S+)")

# Module state
_load_settings: Callable[[], dict[str, Any]] = dict


@dataclass(frozen=True, slots=True)
class StreamTarget:
    """Destination snapshot for one start call. Never mutated."""

    platform: str
    stream_key: str = ""
    rtmp_url: str | None = None  # Override, required for custom without a local server
    resolution: str = ORIGINAL_RESOLUTION
    framerate: int = _DEFAULT_FRAMERATE
    bitrate: int = _DEFAULT_BITRATE_KBPS  # kbps
    audio_bitrate: int = 128  # kbps, stored only; audio is always encoded at 128k


@dataclass(slots=True)
class EncoderProbe:
    ok: bool
    version: str = ""
    error: str = ""
    timed_out: bool = False


def init(load_settings: Callable[[], dict[str, Any]]) -> None:
    """Initialize module with settings loader."""
    global _load_settings
    _load_settings = load_settings


def get_settings() -> dict[str, Any]:
    """Get current settings."""
    return _load_settings()


def get_ffmpeg_path() -> str:
    return get_settings().get("ffmpeg_path") or "ffmpeg"


# ===========================================================================
# Endpoint Resolution
# ===========================================================================


def get_platform_rtmp_url(platform: str | None, custom_url: str | None = None) -> str:
    """Map a platform to its base ingest URL.

    custom and unknown platforms use the caller's override, falling back to
    the local default server.
    """
    base = _PLATFORM_RTMP_URLS.get((platform or "").lower())
    if base:
        return base
    if custom_url:
        return custom_url.rstrip("/")
    return get_settings().get("default_rtmp_url") or _FALLBACK_RTMP_URL


def resolve_endpoint(target: StreamTarget) -> str:
    """Full publish endpoint: base ingest URL + "/" + stream key."""
    base = get_platform_rtmp_url(target.platform, target.rtmp_url)
    return f"{base}/{target.stream_key}"


def target_problem(target: StreamTarget) -> str | None:
    """Return why target can't be streamed to, or None if it's usable."""
    if target.stream_key.strip():
        return None
    if (target.platform or "").lower() == "custom" and target.rtmp_url:
        return None
    return f"Stream key is required for platform '{target.platform}'"


# ===========================================================================
# FFmpeg Command Building
# ===========================================================================


def _parse_resolution(resolution: str | None) -> tuple[int, int] | None:
    """Parse 'WxH' into (width, height). None for 'original' or malformed."""
    if not resolution or resolution == ORIGINAL_RESOLUTION:
        return None
    match = _RESOLUTION_RE.match(resolution.strip())
    if not match:
        log.warning("Ignoring unrecognized resolution %r", resolution)
        return None
    return int(match.group(1)), int(match.group(2))


def build_stream_args(input_path: str, output_url: str, target: StreamTarget) -> list[str]:
    """Build ffmpeg arguments to relay a local file to an RTMP endpoint.

    Deterministic: identical inputs always produce the identical list.
    """
    bitrate = target.bitrate or _DEFAULT_BITRATE_KBPS
    framerate = target.framerate or _DEFAULT_FRAMERATE
    args = [
        "-re",
        "-i",
        input_path,
        "-c:v",
        "libx264",
        "-preset",
        "ultrafast",
        "-tune",
        "zerolatency",
        "-b:v",
        f"{bitrate}k",
        "-maxrate",
        f"{bitrate}k",
        "-bufsize",
        f"{bitrate * 2}k",
        "-r",
        str(framerate),
        "-g",
        str(framerate * 2),
        "-c:a",
        "aac",
        "-b:a",
        _AUDIO_BITRATE,
        "-ar",
        _AUDIO_SAMPLE_RATE,
        "-f",
        "flv",
        output_url,
    ]
    size = _parse_resolution(target.resolution)
    if size:
        # Before "-f flv <url>"
        args[-2:-2] = ["-vf", f"scale={size[0]}:{size[1]}"]
    return args


def build_stream_cmd(input_path: str, output_url: str, target: StreamTarget) -> list[str]:
    """Build the full ffmpeg command (executable first)."""
    return [get_ffmpeg_path(), *build_stream_args(input_path, output_url, target)]


# ===========================================================================
# Encoder Probe
# ===========================================================================


async def probe_encoder(timeout_sec: float | None = None) -> EncoderProbe:
    """Run `ffmpeg -version` and report whether the encoder is usable."""
    if timeout_sec is None:
        timeout_sec = float(get_settings().get("probe_timeout_secs", 10.0))
    ffmpeg = get_ffmpeg_path()
    try:
        process = await asyncio.create_subprocess_exec(
            ffmpeg,
            "-version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return EncoderProbe(ok=False, error=f"{ffmpeg} is not installed or not on PATH")
    except PermissionError as e:
        return EncoderProbe(ok=False, error=f"{ffmpeg} is not executable: {e}")
    except NotImplementedError:
        return EncoderProbe(ok=False, error="Process spawning is not available in this environment")

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_sec)
    except TimeoutError:
        with suppress(ProcessLookupError):
            process.kill()
        with suppress(ProcessLookupError):
            await process.wait()
        log.warning("ffmpeg probe timed out after %.1fs", timeout_sec)
        return EncoderProbe(ok=False, error="Test took too long to complete", timed_out=True)

    output = stdout.decode(errors="replace")
    match = _VERSION_RE.search(output)
    if process.returncode != 0 or not match:
        error = stderr.decode(errors="replace").strip() or "FFmpeg test failed"
        log.info("ffmpeg probe failed (exit %s): %s", process.returncode, error)
        return EncoderProbe(ok=False, error=error)
    return EncoderProbe(ok=True, version=match.group(1))
