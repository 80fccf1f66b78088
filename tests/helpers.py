"""Shared helpers for the test suite."""

import asyncio
import heapq
import itertools
import subprocess
from pathlib import Path

from task_conductor.core.scheduler import Scheduler

FAKE_AGENT = """#!/bin/sh
prompt=$(cat)
printf '%s\\n' '{"type":"system","subtype":"init","session_id":"fake-session","model":"fake-model"}'
case "${FAKE_AGENT_BEHAVIOR:-ok}" in
  fail)
    printf '%s\\n' '{"type":"assistant","message":{"content":[{"type":"text","text":"About to fail"}]}}'
    echo "boom" >&2
    exit 3
    ;;
  hang)
    printf '%s\\n' '{"type":"assistant","message":{"content":[{"type":"text","text":"Thinking"}]}}'
    sleep 30
    ;;
  stream)
    for n in 1 2; do
      printf '{"type":"assistant","message":{"content":[{"type":"text","text":"line-%s"}]}}\\n' "$n"
    done
    sleep "${FAKE_AGENT_DELAY:-1}"
    for n in 3 4; do
      printf '{"type":"assistant","message":{"content":[{"type":"text","text":"line-%s"}]}}\\n' "$n"
    done
    ;;
  *)
    printf '%s\\n' '{"type":"assistant","message":{"content":[{"type":"text","text":"Working on it"}]}}'
    ;;
esac
printf '%s\\n' "$prompt" | head -n 1 >> "${FAKE_AGENT_FILE:-agent-notes.txt}"
printf '%s\\n' '{"type":"tool_use","name":"Write","input":{"file_path":"agent-notes.txt"}}'
exit 0
"""

RESOLVING_AGENT = """#!/bin/sh
cat > /dev/null
for f in $(git diff --name-only --diff-filter=U); do
  printf 'resolved\\n' > "$f"
done
"""

GIVE_UP_AGENT = """#!/bin/sh
cat > /dev/null
exit 0
"""


def git(repo, *args) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def init_repo(path: Path) -> Path:
    path.mkdir(parents=True)
    git(path, "init")
    git(path, "checkout", "-b", "main")
    (path / "README.md").write_text("# Test\n")
    (path / "shared.txt").write_text("original\n")
    git(path, "add", ".")
    git(path, "commit", "-m", "init")
    return path


def write_script(path: Path, body: str) -> Path:
    path.write_text(body)
    path.chmod(0o755)
    return path


class ManualScheduler(Scheduler):
    """Scheduler whose clock only moves when a test calls ``advance``."""

    def __init__(self):
        self.now = 0.0
        self._sleepers: list[tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self.now + seconds, next(self._seq), future))
        await future

    async def _settle(self) -> None:
        for _ in range(10):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        await self._settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            when, _, future = heapq.heappop(self._sleepers)
            if future.done():
                continue
            self.now = max(self.now, when)
            future.set_result(None)
            await self._settle()
        self.now = target
        await self._settle()
