#!/usr/bin/env python3
"""Utility helpers for running collaborator processes to completion."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence


class ProcessLaunchError(RuntimeError):
    pass


@dataclass
class ProcessResult:
    name: str
    argv: List[str]
    returncode: int
    log_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def child_env(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = os.environ.copy()
    if extra:
        env.update({key: str(value) for key, value in extra.items()})
    return env


def run_to_completion(
    name: str,
    argv: Sequence[str],
    log_path: Optional[Path] = None,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> ProcessResult:
    """Run ``argv`` and block until it exits.

    Output goes to ``log_path`` when given, otherwise it is inherited from the
    orchestrator. An interrupt (or any other exception) while waiting stops the
    child before propagating, so no orphaned process outlives the caller.
    """
    argv = [str(arg) for arg in argv]
    stdout = None
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        stdout = open(log_path, "w", encoding="utf-8")
        # Write a small header so users can see what was launched.
        stdout.write(f"[launcher] starting {name}: {' '.join(argv)}\n")
        stdout.flush()
    try:
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdout=stdout,
                stderr=subprocess.STDOUT if stdout else None,
            )
        except OSError as exc:
            raise ProcessLaunchError(f"{name} could not be started ({argv[0]}): {exc}") from exc
        try:
            returncode = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            _terminate_process(proc, name)
            raise ProcessLaunchError(f"{name} did not exit within {timeout:.0f}s and was stopped") from None
        except BaseException:
            _terminate_process(proc, name)
            raise
    finally:
        if stdout:
            stdout.close()
    return ProcessResult(name=name, argv=argv, returncode=returncode, log_path=log_path)


def _terminate_process(proc: subprocess.Popen, name: str, timeout: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()
