"""Sample still frames out of a video with ffmpeg.

The video bytes are written into a scratch directory owned by the
caller and ffmpeg decodes them at a fixed rate (one frame per second by
default), scaling every frame down to a bounded width. Frames are
returned in presentation order as :class:`Frame` handles whose bytes
are only read when needed, so a long video does not sit in memory all
at once.

Extraction is all-or-nothing: a missing binary, a decoder error, a
timeout or a video that yields no frames raises
:class:`ExtractionError`.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from receiptscan.core.config import settings
from receiptscan.core.exceptions import ExtractionError

logger = logging.getLogger(__name__)

FRAME_PATTERN = "frame_%06d.jpg"


@dataclass(frozen=True)
class Frame:
    """One sampled frame; ``index`` is 1-based in sampling order."""

    index: int
    path: Path

    def read(self) -> bytes:
        return self.path.read_bytes()


def _run(cmd: list[str], timeout: Optional[float]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        cmd,
        check=True,
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        timeout=timeout,
    )


def build_ffmpeg_command(
    video_file: Path,
    frames_dir: Path,
    fps: float,
    max_width: int,
    binary: str = "ffmpeg",
) -> list[str]:
    # Bound the width without upscaling; -2 keeps the height even for jpeg
    vf = f"fps={fps},scale='min(iw,{int(max_width)})':-2"
    return [
        binary,
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-i",
        str(video_file),
        "-vf",
        vf,
        "-q:v",
        "3",
        str(frames_dir / FRAME_PATTERN),
    ]


def extract_frames(
    video_bytes: bytes,
    work_dir: Path,
    fps: Optional[float] = None,
    max_width: Optional[int] = None,
    video_suffix: str = ".mp4",
) -> List[Frame]:
    """Decode ``video_bytes`` into frames under ``work_dir``.

    :param video_bytes: The raw video file
    :param work_dir: Existing scratch directory; the caller removes it
    :param fps: Sampling rate, defaults to ``settings.FRAME_SAMPLE_FPS``
    :param max_width: Width bound, defaults to ``settings.FRAME_MAX_WIDTH``
    :returns: Frames ordered by sampling time
    """
    fps = fps or settings.FRAME_SAMPLE_FPS
    max_width = max_width or settings.FRAME_MAX_WIDTH
    if not video_bytes:
        raise ExtractionError("Video is empty")

    work_dir = Path(work_dir)
    video_file = work_dir / f"input{video_suffix or '.mp4'}"
    frames_dir = work_dir / "frames"
    frames_dir.mkdir(parents=True, exist_ok=True)
    video_file.write_bytes(video_bytes)

    cmd = build_ffmpeg_command(video_file, frames_dir, fps, max_width, binary=settings.FFMPEG_BINARY)
    logger.info("[frames] extracting fps=%s max_width=%s bytes=%d", fps, max_width, len(video_bytes))
    try:
        _run(cmd, timeout=settings.FFMPEG_TIMEOUT_SECONDS)
    except FileNotFoundError as exc:
        raise ExtractionError(f"ffmpeg binary not found: {settings.FFMPEG_BINARY}") from exc
    except subprocess.TimeoutExpired as exc:
        raise ExtractionError(f"ffmpeg timed out after {exc.timeout}s") from exc
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or "").strip().splitlines()
        raise ExtractionError(f"ffmpeg failed: {detail[-1] if detail else exc.returncode}") from exc

    paths = sorted(frames_dir.glob("frame_*.jpg"))
    if not paths:
        raise ExtractionError("No frames could be decoded from the video")
    logger.info("[frames] extracted %d frames", len(paths))
    return [Frame(index=i, path=p) for i, p in enumerate(paths, start=1)]
