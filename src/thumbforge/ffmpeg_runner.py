"""FFmpeg runner with process isolation, timeout enforcement and failure artifacts.

Every invocation runs in its own subprocess with a hard timeout. On timeout
the whole process tree is terminated (SIGTERM, grace period, SIGKILL) so no
zombie decoders are left behind by a worker thread.

Key Features:
- Duration probe parsed from FFmpeg's input banner
- Single-frame extraction at an arbitrary timestamp
- Thread-safe: no per-call state is kept on the runner
- Artifact preservation on failure (log + reproducible command script)
"""

import logging
import os
import re
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import imageio_ffmpeg
import psutil

from .errors import PipelineError

logger = logging.getLogger(__name__)

DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")


@dataclass
class FfmpegResult:
    """Result of one FFmpeg execution."""
    returncode: int
    stdout: str
    stderr: str
    elapsed_s: float
    timed_out: bool = False
    command: List[str] = field(default_factory=list)
    artifacts_saved: List[Path] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def parse_duration(output: str) -> Optional[float]:
    """Total duration in seconds from FFmpeg's 'Duration: HH:MM:SS.xx' line."""
    match = DURATION_RE.search(output or "")
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class FfmpegRunner:
    """FFmpeg orchestration for thumbnail extraction.

    Example:
        >>> runner = FfmpegRunner(timeout_s=60)
        >>> duration = runner.probe_duration("clip.mp4")
        >>> runner.extract_frame("clip.mp4", duration / 2, "frame.jpg")
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        timeout_s: float = 120,
        kill_grace_period_s: float = 5,
        save_artifacts_on_failure: bool = False,
        artifacts_dir: Optional[str] = None,
        loglevel: str = "error",
    ):
        """Initialize FFmpeg runner.

        Args:
            ffmpeg_path: FFmpeg executable (None = binary bundled by imageio-ffmpeg)
            timeout_s: Maximum duration of any single FFmpeg call
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            artifacts_dir: Where failure artifacts go (None = TMPDIR or /tmp)
            loglevel: FFmpeg log level for extraction calls
        """
        self.ffmpeg_path = ffmpeg_path
        self.timeout_s = timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.artifacts_dir = artifacts_dir
        self.loglevel = loglevel

    def probe_duration(self, source_path: str) -> float:
        """Total duration of a media file in seconds.

        FFmpeg exits nonzero when given an input and no output, so the exit
        code is ignored here; only the banner is parsed.

        Raises:
            PipelineError: Timed out, or no positive duration in the output
        """
        cmd = [self.get_ffmpeg_exe(), "-hide_banner", "-nostdin", "-i", str(source_path)]
        result = self._run_ffmpeg(cmd)

        if result.timed_out:
            raise PipelineError("Duration probe timed out", result.stderr)

        duration = parse_duration(result.stderr)
        if duration is None:
            raise PipelineError("Could not determine video duration", result.stderr)
        if duration <= 0:
            raise PipelineError(f"Video reports non-positive duration ({duration}s)", result.stderr)
        return duration

    def extract_frame(self, source_path: str, timestamp_s: float, output_path: str) -> FfmpegResult:
        """Extract exactly one frame at `timestamp_s` into `output_path`.

        Uses input seeking (-ss before -i), which is frame-accurate when
        decoding.

        Raises:
            PipelineError: Nonzero exit, timeout, or no output file
        """
        cmd = [
            self.get_ffmpeg_exe(),
            "-hide_banner",
            "-nostdin",
            "-y",
            "-ss", f"{timestamp_s:.3f}",
            "-i", str(source_path),
            "-frames:v", "1",
            "-q:v", "2",
            "-loglevel", self.loglevel,
            str(output_path),
        ]
        result = self._run_ffmpeg(cmd)

        if result.timed_out:
            raise PipelineError(f"Frame extraction timed out after {self.timeout_s}s", result.stderr)
        if result.returncode != 0:
            raise PipelineError(
                f"Frame extraction failed with exit code {result.returncode}", result.stderr
            )
        output = Path(output_path)
        if not output.exists() or output.stat().st_size == 0:
            raise PipelineError("Frame extraction produced no output file", result.stderr)
        return result

    def _run_ffmpeg(self, cmd: List[str]) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement.

        Args:
            cmd: FFmpeg command as list

        Returns:
            FfmpegResult with execution details
        """
        start_time = time.time()
        logger.debug("Running: %s", " ".join(cmd))

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise PipelineError(f"Could not start FFmpeg: {e}") from e

        timed_out = False
        try:
            stdout, stderr = process.communicate(timeout=self.timeout_s)
            returncode = process.returncode
        except subprocess.TimeoutExpired:
            timed_out = True
            stdout, stderr = self._kill_process_tree(process)
            returncode = -1
        except BaseException:
            self._kill_process_tree(process)
            raise

        result = FfmpegResult(
            returncode=returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            elapsed_s=time.time() - start_time,
            timed_out=timed_out,
            command=cmd,
        )

        if timed_out:
            logger.warning("FFmpeg timed out after %ss: %s", self.timeout_s, cmd[-1])

        if (timed_out or returncode != 0) and self.save_artifacts_on_failure:
            result.artifacts_saved = self._save_failure_artifacts(cmd, result.stdout, result.stderr)

        return result

    def _kill_process_tree(self, process: subprocess.Popen) -> Tuple[str, str]:
        """Terminate FFmpeg and its children, then collect remaining output.

        Kill sequence:
        1. SIGTERM to the process and all descendants
        2. Wait the grace period
        3. SIGKILL to survivors
        """
        try:
            parent = psutil.Process(process.pid)
            procs = parent.children(recursive=True) + [parent]
            for proc in procs:
                try:
                    proc.terminate()
                except psutil.NoSuchProcess:
                    pass
            _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
            for proc in alive:
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
        except psutil.NoSuchProcess:
            pass

        try:
            stdout, stderr = process.communicate(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            process.kill()
            stdout, stderr = process.communicate()
        return stdout or "", stderr or ""

    def _save_failure_artifacts(self, cmd: List[str], stdout: str, stderr: str) -> List[Path]:
        """Save debugging artifacts on FFmpeg failure.

        Creates:
        - ffmpeg_error_{timestamp}.log: Command + stdout + stderr
        - ffmpeg_cmd_{timestamp}.sh: Reproducible command script
        """
        artifacts = []
        artifacts_dir = self._get_artifacts_dir()
        stamp = f"{int(time.time() * 1000)}_{os.getpid()}"

        log_path = artifacts_dir / f"ffmpeg_error_{stamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n" + " ".join(cmd) + "\n\n")
                f.write("STDOUT:\n" + (stdout or "(empty)") + "\n\n")
                f.write("STDERR:\n" + (stderr or "(empty)") + "\n")
            artifacts.append(log_path)
        except OSError as e:
            logger.warning("Failed to save FFmpeg error log: %s", e)

        script_path = artifacts_dir / f"ffmpeg_cmd_{stamp}.sh"
        try:
            quoted = [f"'{arg}'" if re.search(r"[\s$`\"\\]", arg) else arg for arg in cmd]
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n\n")
                f.write(" \\\n  ".join(quoted) + "\n")
            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save FFmpeg command script: %s", e)

        return artifacts

    def _get_artifacts_dir(self) -> Path:
        if self.artifacts_dir:
            artifacts_dir = Path(self.artifacts_dir)
        else:
            artifacts_dir = Path(os.environ.get("TMPDIR", "/tmp"))
        artifacts_dir.mkdir(parents=True, exist_ok=True)
        return artifacts_dir

    def get_ffmpeg_exe(self) -> str:
        """FFmpeg executable path."""
        return self.ffmpeg_path or imageio_ffmpeg.get_ffmpeg_exe()

    def check(self) -> bool:
        """Verify FFmpeg can be located and runs."""
        try:
            subprocess.run(
                [self.get_ffmpeg_exe(), "-version"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.timeout_s,
                check=True,
            )
            return True
        except (RuntimeError, subprocess.SubprocessError, OSError):
            return False
