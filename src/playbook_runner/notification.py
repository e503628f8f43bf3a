"""Text-to-speech notifications through an external command."""

from __future__ import annotations

import asyncio
import logging
import shlex

logger = logging.getLogger(__name__)


class CommandNotifier:
    """Pipe text to the stdin of a TTS command such as `say` or `espeak`."""

    async def speak(self, text: str, command: str) -> None:
        args = shlex.split(command)
        if not args:
            return
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await process.communicate(text.encode("utf-8"))
        if process.returncode:
            logger.debug("TTS command %s exited with %s", args[0], process.returncode)
