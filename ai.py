import asyncio
import http.client
import json
import os
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional
from urllib import request

import demo_data

OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
OFFLINE_MODEL = "No AI (offline demo data)"
_NETWORK_MODELS = [
    "openai/gpt-4.1-mini",
    "openai/gpt-oss-20b:free",
    "google/gemini-2.0-flash-exp:free",
    "google/gemma-3-27b-it:free",
    "meta-llama/llama-3.3-70b-instruct:free",
    "mistralai/mistral-small-3.2-24b-instruct:free",
    "qwen/qwen3-14b:free",
    "z-ai/glm-4.5-air:free",
]
AVAILABLE_MODELS = [OFFLINE_MODEL, *_NETWORK_MODELS]
DEFAULT_MODEL = _NETWORK_MODELS[0]
DEFAULT_PERSPECTIVE = "an interested learner"
DEFAULT_PURPOSE = "learning and understanding"
SUBCATEGORY_COUNT = 3
DEFAULT_CALL_BUDGET = 10
DEFAULT_MIN_SPACING_MS = 100
_PROMPT_LOG_PATH = Path("prompt.log")
_prompt_log_lock = threading.Lock()
_force_new_prompt_task = True
_current_task_prompt_count = 0
_CONNECTION_LOG_PATH = Path("connection.log")
_connection_log_lock = threading.Lock()
_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class ExpansionFailed(Exception):
    """An expansion could not be produced; nothing may be applied."""


class MalformedResponse(ExpansionFailed):
    """The service answered, but not with the expected JSON shape."""


class TransportError(ExpansionFailed):
    """The service could not be reached or refused the request."""


class RateLimited(ExpansionFailed):
    """The local call budget or cooldown rejected a live call."""


@dataclass(frozen=True)
class Subcategory:
    name: str
    description: str = ""


@dataclass(frozen=True)
class ExpansionRequest:
    subject: str
    context: str = ""
    exclude: tuple[str, ...] = ()
    path: tuple[Subcategory, ...] = ()
    perspective: str = ""
    purpose: str = ""

    def to_payload(self) -> dict[str, object]:
        return {
            "subject": self.subject,
            "context": self.context,
            "exclude": list(self.exclude),
            "path": [{"name": item.name, "description": item.description} for item in self.path],
            "perspective": self.perspective,
            "purpose": self.purpose,
        }


@dataclass(frozen=True)
class ExpansionResult:
    subject: str
    description: str
    subcategories: tuple[Subcategory, ...] = field(default_factory=tuple)


def _reset_prompt_state_locked() -> None:
    global _force_new_prompt_task, _current_task_prompt_count
    _force_new_prompt_task = True
    _current_task_prompt_count = 0


def reset_prompt_log() -> None:
    with _prompt_log_lock:
        _PROMPT_LOG_PATH.write_text("", encoding="utf-8")
        _reset_prompt_state_locked()


def reset_connection_log() -> None:
    with _connection_log_lock:
        _CONNECTION_LOG_PATH.write_text("", encoding="utf-8")


def start_prompt_session() -> None:
    with _prompt_log_lock:
        _reset_prompt_state_locked()


def finish_prompt_session() -> None:
    with _prompt_log_lock:
        _reset_prompt_state_locked()


def _ensure_prompt_header_locked() -> None:
    global _force_new_prompt_task, _current_task_prompt_count
    if not _force_new_prompt_task:
        return
    size = _PROMPT_LOG_PATH.stat().st_size if _PROMPT_LOG_PATH.exists() else 0
    with _PROMPT_LOG_PATH.open("a", encoding="utf-8") as log:
        if size:
            log.write("=====\n")
    _force_new_prompt_task = False
    _current_task_prompt_count = 0


def _log_prompt_exchange(prompt: str, response_raw: str | None, error: str | None) -> None:
    prompt_text = prompt.strip() or "<empty prompt>"
    response_text = (response_raw or "").strip()
    global _current_task_prompt_count
    prompt_timestamp = datetime.now().isoformat(timespec="seconds")
    with _prompt_log_lock:
        _ensure_prompt_header_locked()
        with _PROMPT_LOG_PATH.open("a", encoding="utf-8") as log:
            if _current_task_prompt_count:
                log.write("----\n")
            entry_no = _current_task_prompt_count + 1
            log.write(f"mindmap-teacher [{prompt_timestamp}] Prompt {entry_no}:\n")
            log.write("------------------------------------------------------------\n")
            log.write(f"{prompt_text}\n")
            log.write("============================================================\n")
            response_timestamp = datetime.now().isoformat(timespec="seconds")
            log.write(f"{get_active_model()} [{response_timestamp}] Response {entry_no}:\n")
            log.write("------------------------------------------------------------\n")
            if error:
                log.write(f"<error> {error}\n")
            elif response_text:
                log.write(f"{response_text}\n")
            else:
                log.write("<empty>\n")
            log.write("============================================================\n")
        _current_task_prompt_count += 1


def log_connection_event(status: str, model: str, detail: str | None = None) -> None:
    timestamp = datetime.now().isoformat(timespec="seconds")
    message = detail.strip() if detail else ""
    line = f"{timestamp}\t{status.upper()}\t{model}"
    if message:
        line = f"{line}\t{message}"
    with _connection_log_lock:
        with _CONNECTION_LOG_PATH.open("a", encoding="utf-8") as log:
            log.write(line + "\n")


def get_active_model() -> str:
    return os.getenv("OPENROUTER_MODEL", DEFAULT_MODEL)


def set_active_model(model: str) -> None:
    os.environ["OPENROUTER_MODEL"] = model


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class RateGovernor:
    """Per-session live-call budget plus a minimum spacing between calls."""

    def __init__(
        self,
        budget: int | None = None,
        min_spacing: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.budget = budget if budget is not None else _env_int("MINDMAP_CALL_BUDGET", DEFAULT_CALL_BUDGET)
        if min_spacing is None:
            min_spacing = _env_int("MINDMAP_MIN_SPACING_MS", DEFAULT_MIN_SPACING_MS) / 1000
        self.min_spacing = min_spacing
        self.calls = 0
        self._clock = clock
        self._last_call: Optional[float] = None

    @property
    def exhausted(self) -> bool:
        return self.calls >= self.budget

    def acquire(self, now: float | None = None) -> None:
        moment = self._clock() if now is None else now
        if self.exhausted:
            raise RateLimited(f"call budget of {self.budget} used up")
        if self._last_call is not None and moment - self._last_call < self.min_spacing:
            raise RateLimited("calls too close together")
        self.calls += 1
        self._last_call = moment


def _post_openrouter(
    model: str, messages: list[dict]
) -> tuple[Optional[dict], Optional[ExpansionFailed], Optional[str]]:
    if model == OFFLINE_MODEL:
        return None, TransportError("offline model"), None

    api_key = os.getenv("OPENROUTER_API_KEY")
    if not api_key:
        return None, TransportError("missing api key"), None

    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "X-Title": "mindmap-teacher",
    }
    body = {
        "model": model,
        "messages": messages,
        "response_format": {"type": "json_object"},
        "temperature": 0.7,
    }

    data = json.dumps(body).encode("utf-8")
    http_request = request.Request(
        OPENROUTER_API_URL,
        data=data,
        headers=headers,
        method="POST",
    )
    try:
        with request.urlopen(http_request, timeout=30) as response:
            status = getattr(response, "status", 200)
            if not 200 <= status < 300:
                return None, TransportError(f"HTTP {status}"), None
            raw_body = response.read()
    except (OSError, http.client.HTTPException) as exc:
        # URLError and socket errors are both OSError subclasses.
        return None, TransportError(str(exc) or type(exc).__name__), None

    try:
        raw_payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        return None, MalformedResponse(f"undecodable body: {exc}"), None
    try:
        parsed = json.loads(raw_payload)
    except json.JSONDecodeError as exc:
        return None, MalformedResponse(f"invalid JSON: {exc}"), raw_payload
    return parsed, None, raw_payload


def _extract_text(response: dict) -> Optional[str]:
    try:
        choices = response["choices"]
        if not choices:
            return None
        message = choices[0]["message"]
        return message.get("content")
    except (KeyError, TypeError, IndexError):
        return None


def _call_openrouter(prompt: str) -> str:
    model = get_active_model()
    response_payload, failure, raw_payload = _post_openrouter(
        model, [{"role": "user", "content": prompt}]
    )
    failure_text = str(failure) if failure is not None else None
    if failure_text is not None:
        log_connection_event("FAIL", model, failure_text)
    else:
        log_connection_event("SUCCESS", model)
    raw_for_log = raw_payload
    if raw_for_log is None and response_payload is not None:
        raw_for_log = json.dumps(response_payload, ensure_ascii=False)
    _log_prompt_exchange(prompt, raw_for_log, failure_text)
    if failure is not None:
        raise failure
    if not response_payload:
        raise TransportError("empty response")
    completion_text = _extract_text(response_payload)
    if not completion_text:
        raise MalformedResponse("response carried no completion text")
    return completion_text


def expansion_prompt(req: ExpansionRequest) -> str:
    perspective = req.perspective.strip() or DEFAULT_PERSPECTIVE
    purpose = req.purpose.strip() or DEFAULT_PURPOSE
    memory = "\n".join(f"- {item.name}: {item.description}" for item in req.path) or "- (none)"
    forbidden = ", ".join(req.exclude) or "(none)"
    context_line = f'Context breadcrumb: "{req.context}".\n' if req.context else ""
    return (
        "You are a teacher tailoring explanations to the reader.\n\n"
        f'Reader perspective/audience: "{perspective}".\n'
        f'Purpose/intent: "{purpose}".\n\n'
        "Return ONLY a JSON object (no prose, no code fences) shaped as\n"
        '{"subject": string, "description": string, '
        '"subcategories": [{"name": string, "description": string}, ...]}.\n\n'
        f'Topic to expand: "{req.subject}".\n'
        f"{context_line}\n"
        f"Ancestry memory (oldest to newest):\n{memory}\n\n"
        f"Forbidden names (avoid exact/near duplicates; pick different on-topic items): {forbidden}.\n\n"
        "Rules:\n"
        f'- The JSON "subject" MUST equal "{req.subject}".\n'
        "- Keep everything specific to the provided context/memory AND aligned to the reader perspective and purpose.\n"
        f'- Provide exactly {SUBCATEGORY_COUNT} unique, concrete, immediate subcategories of "{req.subject}".\n'
        '- One concise sentence for each "description". Use approachable wording for the audience.'
    )


def parse_expansion(raw: str | dict, subject: str | None = None) -> ExpansionResult:
    """Validate a service reply and turn it into an ``ExpansionResult``.

    Raises ``MalformedResponse`` when the reply is not JSON, lacks ``subject``
    or ``subcategories``, or does not carry exactly three named subcategories.
    """
    if isinstance(raw, str):
        cleaned = _CODE_FENCE_RE.sub("", raw.strip())
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            raise MalformedResponse(f"invalid JSON: {exc}") from exc
    else:
        data = raw
    if not isinstance(data, dict):
        raise MalformedResponse("expected a JSON object")
    reply_subject = data.get("subject")
    if not isinstance(reply_subject, str) or not reply_subject.strip():
        reply_subject = None
    records = data.get("subcategories")
    if reply_subject is None or not isinstance(records, list):
        raise MalformedResponse("missing subject or subcategories")
    if len(records) != SUBCATEGORY_COUNT:
        raise MalformedResponse(f"expected {SUBCATEGORY_COUNT} subcategories, got {len(records)}")
    subcategories: list[Subcategory] = []
    for record in records:
        if not isinstance(record, dict):
            raise MalformedResponse("subcategory is not an object")
        name = record.get("name")
        if not isinstance(name, str) or not name.strip():
            raise MalformedResponse("subcategory without a name")
        description = record.get("description")
        cleaned_description = " ".join(description.split()) if isinstance(description, str) else ""
        subcategories.append(Subcategory(" ".join(name.split()), cleaned_description))
    description = data.get("description")
    return ExpansionResult(
        subject=subject or reply_subject,
        description=description.strip() if isinstance(description, str) else "",
        subcategories=tuple(subcategories),
    )


def demo_expansion(subject: str) -> ExpansionResult:
    return parse_expansion(demo_data.demo_record(subject))


class ExpandService:
    """Async expand-service: live OpenRouter calls with a degraded fallback.

    Offline mode, a missing key, a used-up budget and a cooldown are all
    answered from the demo records. A transport failure still fails the
    current call but sends later calls to the demo records.
    """

    def __init__(self, governor: RateGovernor | None = None, *, degraded: bool = False) -> None:
        self.governor = governor or RateGovernor()
        self.degraded = degraded

    @property
    def uses_network(self) -> bool:
        api_key = os.getenv("OPENROUTER_API_KEY")
        return bool(api_key) and get_active_model() != OFFLINE_MODEL and not self.degraded

    def _serve_demo(self, req: ExpansionRequest, reason: str) -> ExpansionResult:
        log_connection_event("DEMO", get_active_model(), f"{reason}: {req.subject}")
        return demo_expansion(req.subject)

    async def __call__(self, req: ExpansionRequest) -> ExpansionResult:
        if not self.uses_network:
            return self._serve_demo(req, "degraded" if self.degraded else "offline")
        try:
            self.governor.acquire()
        except RateLimited as exc:
            return self._serve_demo(req, str(exc))
        prompt = expansion_prompt(req)
        try:
            raw = await asyncio.to_thread(_call_openrouter, prompt)
        except TransportError:
            self.degraded = True
            raise
        return parse_expansion(raw, req.subject)
