"""Test helpers for helm-sync tools."""

import sys

from helm_sync.command import Command, run

HELM_SYNC_CMD = [sys.executable, "-m", "helm_sync.tool"]


async def run_command(args: list[str], env: dict[str, str] | None = None) -> str:
    return await run(Command(HELM_SYNC_CMD + args, env=env))
