from __future__ import annotations

import asyncio
import json
import logging
import re
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import ValidationError

from canvas_relay.protocol.commands import Command, Draw, as_int, coerce_commands, has_draw
from canvas_relay.protocol.messages import Analysis

from . import prompts
from .config import Settings
from .rendering import prepare_snapshot_png_b64
from .sessions import CanvasSnapshot

log = logging.getLogger(__name__)


class PlannerError(RuntimeError):
    """A planning call failed in a way the next round may not repeat (network, model, parse)."""


class PlannerUnavailable(PlannerError):
    """No planning is possible at all (e.g. no model server configured)."""


@dataclass
class CommandBatch:
    commands: list[Command] = field(default_factory=list)
    analysis: Analysis | None = None
    # planner judged the drawing done (completion >= threshold)
    complete: bool = False
    error: str | None = None
    recoverable: bool = True

    def __len__(self) -> int:
        return len(self.commands)

    @property
    def has_draw(self) -> bool:
        return has_draw(self.commands)

    @classmethod
    def failed(cls, reason: str, *, recoverable: bool = True, analysis: Analysis | None = None) -> "CommandBatch":
        return cls(error=reason, recoverable=recoverable, analysis=analysis)


class PlannerBackend(Protocol):
    async def generate(
        self,
        *,
        system: str | None,
        texts: list[str],
        image_b64: str | None,
        tool: dict | None,
        temperature: float,
        max_tokens: int,
    ) -> str: ...


# --- model server backend -------------------------------------------------------------

COMMANDS_TOOL = {
    "type": "function",
    "function": {
        "name": "emit_drawing_commands",
        "description": "Emit an ordered batch of canvas commands.",
        "parameters": {
            "type": "object",
            "properties": {
                "commands": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "endpoint": {"type": "string"},
                            "params": {"type": "object"},
                        },
                        "required": ["endpoint"],
                    },
                }
            },
            "required": ["commands"],
        },
    },
}

ANALYSIS_TOOL = {
    "type": "function",
    "function": {
        "name": "report_canvas_analysis",
        "description": "Describe the canvas and how complete the drawing is.",
        "parameters": {
            "type": "object",
            "properties": {
                "description": {"type": "string"},
                "suggestions": {"type": "array", "items": {"type": "string"}},
                "completionPercentage": {"type": "number"},
            },
            "required": ["description", "completionPercentage"],
        },
    },
}


def _model_server_payload(
    *,
    model: str,
    system: str | None,
    texts: list[str],
    image_b64: str | None,
    tool: dict | None,
    temperature: float,
    max_tokens: int,
) -> dict:
    content: list[dict] = []
    if image_b64:
        # image first: better for vision tasks
        content.append({"type": "image_url", "image_url": {"url": f"data:image/png;base64,{image_b64}"}})
    content.extend({"type": "text", "text": t} for t in texts)

    messages: list[dict] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": content})

    payload: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "stream": False,
    }
    if tool is not None:
        payload["tools"] = [tool]
        payload["tool_choice"] = {"type": "function", "function": {"name": tool["function"]["name"]}}
    return payload


def _call_model_server_sync(*, base_url: str, api_key: str | None, timeout_s: float, payload: dict) -> dict:
    url = base_url.rstrip("/") + "/v1/chat/completions"
    data = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    req = urllib.request.Request(url, data=data, headers=headers, method="POST")
    with urllib.request.urlopen(req, timeout=timeout_s) as resp:
        raw = resp.read().decode("utf-8")
        return json.loads(raw)


class ModelServerBackend:
    """Calls an OpenAI-compatible `/v1/chat/completions` gateway with tool-calling."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def generate(
        self,
        *,
        system: str | None,
        texts: list[str],
        image_b64: str | None,
        tool: dict | None,
        temperature: float,
        max_tokens: int,
    ) -> str:
        settings = self.settings
        if not settings.model_server_url:
            raise PlannerUnavailable("no model server configured (set CANVAS_RELAY_MODEL_SERVER_URL)")

        payload = _model_server_payload(
            model=settings.model_server_model,
            system=system,
            texts=texts,
            image_b64=image_b64,
            tool=tool,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        try:
            resp = await asyncio.to_thread(
                _call_model_server_sync,
                base_url=settings.model_server_url,
                api_key=settings.model_server_api_key,
                timeout_s=settings.model_server_timeout_s,
                payload=payload,
            )
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise PlannerError(f"model-server unreachable: {e}") from e
        except ValueError as e:
            raise PlannerError(f"model-server sent invalid JSON: {e}") from e

        try:
            msg = (resp.get("choices") or [])[0]["message"]
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            raise PlannerError(f"model-server bad response: {e}") from e
        if not isinstance(msg, dict):
            raise PlannerError("model-server bad response: message is not an object")
        tool_calls = msg.get("tool_calls") or []
        if tool_calls:
            args = (tool_calls[0].get("function") or {}).get("arguments")
            if isinstance(args, str) and args.strip():
                return args
        text = msg.get("content")
        if isinstance(text, str) and text.strip():
            return text
        raise PlannerError("model-server returned neither tool arguments nor text")


# --- response parsing ----------------------------------------------------------------

_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


def strip_fences(text: str) -> str:
    return _FENCE.sub("", text.strip()).strip()


def _load_json(text: str, opener: str, closer: str) -> Any:
    cleaned = strip_fences(text)
    try:
        return json.loads(cleaned)
    except ValueError:
        pass
    # Models sometimes wrap the payload in prose; try the outermost bracketed span.
    start, end = cleaned.find(opener), cleaned.rfind(closer)
    if start == -1 or end <= start:
        raise PlannerError("response is not JSON")
    try:
        return json.loads(cleaned[start : end + 1])
    except ValueError as e:
        raise PlannerError(f"response is not JSON: {e}") from e


def parse_command_batch(text: str) -> list[Command]:
    """Extract commands from a planner reply: a JSON array, or an object holding `commands`."""
    obj = _load_json(text, "[", "]")
    if isinstance(obj, dict):
        obj = obj.get("commands")
    if not isinstance(obj, list):
        raise PlannerError("response is not a command array")
    return coerce_commands(obj)


def parse_analysis(text: str) -> Analysis:
    obj = _load_json(text, "{", "}")
    if not isinstance(obj, dict):
        raise PlannerError("analysis is not a JSON object")
    suggestions = obj.get("suggestions")
    if not isinstance(suggestions, list):
        suggestions = [suggestions] if isinstance(suggestions, str) else []
    completion = as_int(obj.get("completionPercentage"))
    cleaned = {
        "description": obj.get("description", obj.get("analysis", "")),
        "suggestions": [s if isinstance(s, str) else json.dumps(s) for s in suggestions],
        "completionPercentage": max(0, min(100, completion if completion is not None else 0)),
    }
    if not isinstance(cleaned["description"], str):
        cleaned["description"] = json.dumps(cleaned["description"])
    try:
        return Analysis.model_validate(cleaned)
    except ValidationError as e:
        raise PlannerError(f"analysis has the wrong shape: {e}") from e


def cap_draws(commands: list[Command], limit: int) -> list[Command]:
    """Keep at most `limit` draw commands; control commands keep their place."""
    out: list[Command] = []
    draws = 0
    for cmd in commands:
        if isinstance(cmd, Draw):
            if draws >= limit:
                continue
            draws += 1
        out.append(cmd)
    return out


# --- planner client ------------------------------------------------------------------


class PlannerClient:
    """
    Boundary to the drawing planner.

    Every `plan_*` call returns a CommandBatch and never raises: failures come back
    as an empty batch with `error` set, terminal analyses with `complete` set.
    """

    def __init__(self, backend: PlannerBackend, settings: Settings) -> None:
        self.backend = backend
        self.settings = settings
        self.history: list[str] = []

    def clear_conversation(self) -> None:
        if self.history:
            log.info("clearing planner conversation history (%d entries)", len(self.history))
        self.history = []

    def _remember(self, prompt: str, reply: str) -> None:
        self.history.extend([prompt, reply])
        limit = self.settings.conversation_history_limit
        if len(self.history) > limit:
            self.history = self.history[-limit:]

    async def _image(self, snapshot: CanvasSnapshot | None) -> str | None:
        if snapshot is None or not snapshot.data:
            return None
        s = self.settings
        try:
            return await asyncio.to_thread(
                prepare_snapshot_png_b64,
                snapshot.data,
                grid=s.grid_overlay and not snapshot.has_grid_overlay,
                grid_size=s.grid_size,
                max_px=s.snapshot_max_px,
            )
        except ValueError as e:
            log.warning("ignoring canvas snapshot v%d: %s", snapshot.version, e)
            return None

    async def _commands(self, *, texts: list[str], image_b64: str | None) -> tuple[list[Command], str]:
        reply = await self.backend.generate(
            system=prompts.SYSTEM_PROMPT,
            texts=texts,
            image_b64=image_b64,
            tool=COMMANDS_TOOL,
            temperature=self.settings.planner_temperature,
            max_tokens=self.settings.planner_max_tokens,
        )
        if self.settings.debug_log_msgs:
            log.debug("planner reply: %s", reply)
        return parse_command_batch(reply), reply

    async def _analyze(self, image: str | None, previous: Analysis | None, prompt: str | None) -> Analysis:
        previous_json = previous.model_dump_json() if previous is not None else None
        reply = await self.backend.generate(
            system=None,
            texts=prompts.analysis_prompt(prompt, previous_json),
            image_b64=image,
            tool=ANALYSIS_TOOL,
            temperature=self.settings.analysis_temperature,
            max_tokens=self.settings.analysis_max_tokens,
        )
        analysis = parse_analysis(reply)
        log.info("canvas analysis: %d%% complete", analysis.completionPercentage)
        return analysis

    def _complete(self, analysis: Analysis) -> bool:
        return analysis.completionPercentage >= self.settings.completion_threshold

    async def analyze(
        self, snapshot: CanvasSnapshot | None, previous: Analysis | None = None, prompt: str | None = None
    ) -> Analysis | None:
        try:
            return await self._analyze(await self._image(snapshot), previous, prompt)
        except PlannerError as e:
            log.warning("canvas analysis failed: %s", e)
            return None

    async def plan_initial(self, prompt: str, snapshot: CanvasSnapshot | None) -> CommandBatch:
        try:
            image = await self._image(snapshot)
            commands, reply = await self._commands(texts=[*self.history, prompt], image_b64=image)
        except PlannerUnavailable as e:
            log.warning("initial plan unavailable: %s", e)
            return CommandBatch.failed(str(e), recoverable=False)
        except PlannerError as e:
            log.warning("initial plan failed: %s", e)
            return CommandBatch.failed(str(e))
        except Exception as e:
            log.exception("initial plan crashed")
            return CommandBatch.failed(f"planner error: {e}")
        self._remember(prompt, reply)
        log.info("initial plan: %d command(s)", len(commands))
        return CommandBatch(commands=commands)

    async def plan_continuation(self, snapshot: CanvasSnapshot | None, prompt: str, phase: int) -> CommandBatch:
        analysis: Analysis | None = None
        try:
            image = await self._image(snapshot)
            analysis = await self._analyze(image, None, prompt)
            if self._complete(analysis):
                return CommandBatch(analysis=analysis, complete=True)
            text = prompts.continuation_prompt(
                prompt, phase, analysis.description, analysis.completionPercentage, analysis.suggestions
            )
            commands, _ = await self._commands(texts=[text], image_b64=image)
        except PlannerUnavailable as e:
            return CommandBatch.failed(str(e), recoverable=False, analysis=analysis)
        except PlannerError as e:
            log.warning("continuation plan failed: %s", e)
            return CommandBatch.failed(str(e), analysis=analysis)
        except Exception as e:
            log.exception("continuation plan crashed")
            return CommandBatch.failed(f"planner error: {e}", analysis=analysis)
        log.info("continuation plan (phase %d): %d command(s)", phase, len(commands))
        return CommandBatch(commands=commands, analysis=analysis)

    async def plan_streaming_step(
        self,
        snapshot: CanvasSnapshot | None,
        prompt: str,
        phase: int,
        previous: Analysis | None,
        batch_size: int = 3,
    ) -> CommandBatch:
        analysis: Analysis | None = None
        try:
            image = await self._image(snapshot)
            analysis = await self._analyze(image, previous, prompt)
            if self._complete(analysis):
                return CommandBatch(analysis=analysis, complete=True)
            text = prompts.streaming_prompt(
                prompt,
                phase,
                analysis.description,
                analysis.completionPercentage,
                analysis.suggestions,
                batch_size,
            )
            commands, _ = await self._commands(texts=[text], image_b64=image)
        except PlannerUnavailable as e:
            return CommandBatch.failed(str(e), recoverable=False, analysis=analysis)
        except PlannerError as e:
            log.warning("streaming step failed: %s", e)
            return CommandBatch.failed(str(e), analysis=analysis)
        except Exception as e:
            log.exception("streaming step crashed")
            return CommandBatch.failed(f"planner error: {e}", analysis=analysis)

        commands = cap_draws(commands, batch_size)
        if not has_draw(commands):
            # no fabricated fallback drawing: report and let the next snapshot retry
            return CommandBatch.failed("planner returned no drawing commands", analysis=analysis)
        return CommandBatch(commands=commands, analysis=analysis)
