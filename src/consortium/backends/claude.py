from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from consortium.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

logger = logging.getLogger(__name__)

# A single stream-json event can carry a whole file read by a tool.
STREAM_LIMIT_BYTES = 32 * 1024 * 1024


class ClaudeCodeBackend(AgentBackend):
    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(
        self,
        model: str,
        allowed_tools: list[str],
        system_prompt: str | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "--print",
            "--model",
            model,
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        if system_prompt:
            command.extend(["--system-prompt", system_prompt])
        if allowed_tools:
            command.extend(["--allowedTools", ",".join(allowed_tools)])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        message = event.get("message")
        if isinstance(message, dict):
            event = message
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and item.get("type", "text") == "text":
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    def _usage_tokens(event: dict[str, Any]) -> int:
        usage = event.get("usage")
        if not isinstance(usage, dict):
            return 0
        total = 0
        for key in ("input_tokens", "output_tokens"):
            value = usage.get(key)
            if isinstance(value, int):
                total += value
        return total

    async def invoke(
        self,
        role: str,
        model: str,
        prompt: str,
        allowed_tools: list[str],
        system_prompt: str | None = None,
    ) -> dict[str, Any]:
        command = self.build_command(model, allowed_tools, system_prompt)
        logger.debug("Starting %s agent on %s: %s", role, model, command[0])
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        try:
            return await self._communicate(process, prompt)
        finally:
            if process.returncode is None:
                logger.warning("Killing unfinished %s agent (pid %s)", role, process.pid)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

    async def _communicate(self, process: Any, prompt: str) -> dict[str, Any]:
        if process.stdin is None or process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdio.", backend="claude", retriable=False
            )

        process.stdin.write(prompt.encode("utf-8"))
        await process.stdin.drain()
        process.stdin.close()

        chunks: list[str] = []
        result_text: str | None = None
        cost_usd = 0.0
        tokens = 0

        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                chunks.append(line)
                continue

            if not isinstance(event, dict):
                continue
            if event.get("type") == "result":
                if isinstance(event.get("result"), str):
                    result_text = event["result"]
                cost = event.get("total_cost_usd")
                if isinstance(cost, (int, float)):
                    cost_usd = float(cost)
                tokens = self._usage_tokens(event) or tokens
                continue

            content = self._extract_content(event)
            if content:
                chunks.append(content)

        if parse_buffer:
            chunks.append(parse_buffer)

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: {stderr_output}",
                backend="claude",
                exit_code=return_code,
                retriable=True,
            )

        content = result_text if result_text is not None else "\n".join(chunks)
        return {
            "backend": "claude",
            "content": content.strip(),
            "cost_usd": cost_usd,
            "tokens": tokens,
        }
