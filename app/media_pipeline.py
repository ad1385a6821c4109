import asyncio
import io
import logging
from pathlib import Path
from typing import List, Sequence

from PIL import Image

from .errors import TranscodeError, ValidationError

logger = logging.getLogger(__name__)

MERGED_SUFFIX = ".m4a"
MERGED_MIME = "audio/mp4"
COVER_MAX_SIZE = (1200, 1800)


class FfmpegTranscoder:
    """
    Concatenate audio files with ffmpeg.

    Every input is first normalized to the same AAC stream (44.1 kHz, stereo)
    so the concat demuxer never trips over mixed codecs, then the parts are
    joined in the order given. Each ffmpeg run is bounded by ``timeout``.
    """

    def __init__(self, ffmpeg_bin: str = "ffmpeg", *, timeout: float = 300.0, bitrate: str = "128k"):
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout = timeout
        self.bitrate = bitrate

    def _aac_args(self) -> List[str]:
        return ["-vn", "-c:a", "aac", "-b:a", self.bitrate, "-ar", "44100", "-ac", "2",
                "-movflags", "+faststart"]

    async def _run(self, args: Sequence[str], what: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ffmpeg_bin, "-nostdin", "-hide_banner", "-loglevel", "error", *args,
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TranscodeError(f"cannot start {self.ffmpeg_bin}: {exc}") from exc
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TranscodeError(f"{what} timed out after {self.timeout:.0f}s")
        if proc.returncode != 0:
            raise TranscodeError(f"{what} failed: {(stderr or b'').decode(errors='ignore').strip()}")

    async def concatenate(self, sources: Sequence[Path], workdir: Path) -> Path:
        if len(sources) < 2:
            raise TranscodeError("need at least two sources to concatenate")
        norm_dir = workdir / "_norm"
        norm_dir.mkdir(parents=True, exist_ok=True)

        # 1) normalize each input -> part-NNN.m4a
        norm_paths: List[Path] = []
        for i, src in enumerate(sources):
            if not src.exists() or src.stat().st_size == 0:
                raise TranscodeError(f"missing_or_empty: {src.name}")
            target = norm_dir / f"part-{i:03d}{MERGED_SUFFIX}"
            await self._run(["-i", str(src), "-map", "a:0?", *self._aac_args(), "-y", str(target)],
                            f"normalize {src.name}")
            if not target.exists() or target.stat().st_size == 0:
                raise TranscodeError(f"normalized empty: {target.name}")
            norm_paths.append(target)

        # 2) concat demuxer over the normalized parts
        list_file = workdir / "concat.txt"
        with list_file.open("w", encoding="utf-8") as fh:
            for p in norm_paths:
                escaped = str(p).replace("'", "'\\''")
                fh.write(f"file '{escaped}'\n")

        merged = workdir / f"merged{MERGED_SUFFIX}"
        await self._run(["-f", "concat", "-safe", "0", "-i", str(list_file), *self._aac_args(),
                         "-y", str(merged)], "concat")
        if not merged.exists() or merged.stat().st_size == 0:
            raise TranscodeError("concat produced an empty file")
        logger.info("Concatenated %d sources into %s", len(sources), merged.name)
        return merged


def normalize_cover_image(data: bytes, max_size=COVER_MAX_SIZE) -> bytes:
    """Re-encode an uploaded cover as a bounded RGB JPEG."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.thumbnail(max_size)
            img = img.convert("RGB")  # ensure JPEG-compatible
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=88)
    except (OSError, Image.DecompressionBombError) as exc:
        raise ValidationError("Cover image is not a readable image",
                              errors=[{"field": "cover_image", "message": str(exc)}]) from exc
    return out.getvalue()


__all__ = ["FfmpegTranscoder", "normalize_cover_image", "MERGED_MIME", "MERGED_SUFFIX"]
