"""Language-model summaries with a deterministic fallback.

The summarizer turns a classification and its surrounding context into a
short summary by asking a local Ollama model. The model is best-effort: a
timeout, an unreachable server or a reply that does not validate all lead to
a templated summary computed from the classification alone, tagged
``source=fallback``. Building that fallback cannot fail.

Replies are parsed in two stages. First the whole reply must be a JSON
object with a non-empty ``summary``. If that fails, a lenient pass looks for
an embedded JSON object, a ``"summary": "..."`` fragment or a ``SUMMARY:``
line. Anything else counts as SummarizerUnavailable.

The LLM call itself is never retried; the session is created with transport
retries disabled.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

import requests

from .classifier import SwitchBurst
from .errors import SummarizerUnavailable
from .models import (
    ClassificationResult,
    Event,
    Mode,
    Summary,
    SummarySource,
    Timeframe,
    utcnow,
)
from .resources import ResourceManager

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a supportive ADHD productivity assistant. You MUST respond with ONLY "
    "valid JSON, no other text or commentary. Be encouraging and give actionable "
    "insights inside the JSON. Address the user as you."
)

MODE_INSTRUCTIONS = {
    Mode.GHOST: (
        "Write a neutral, professional summary of what the user worked on. "
        "Do not give advice."
    ),
    Mode.CHILL: (
        "The user is relaxing. Summarize lightly and only suggest a change if "
        "they have been drifting for a long time."
    ),
    Mode.STUDY: (
        "The user is studying. Judge whether the activity supports their study "
        "focus and, if they drifted, suggest one concrete way back."
    ),
    Mode.COACH: (
        "The user is working on a specific task. Relate the activity to that task "
        "and suggest the next concrete step."
    ),
}

COLLECTOR_STATUS_OK = "ok"
COLLECTOR_STATUS_EMPTY = "empty"
COLLECTOR_STATUS_UNAVAILABLE = "unavailable"

MAX_TIMELINE_EVENTS = 20


@dataclass
class TimeframeContext:
    """Collected events and classification for one timeframe.

    Attributes:
        timeframe: Which lookback window this is.
        events: Merged active events (empty when the collector failed).
        classification: Result for these events.
        status: ``ok``, ``empty`` (tracker had no data) or ``unavailable``.
    """
    timeframe: Timeframe
    events: List[Event]
    classification: ClassificationResult
    status: str = COLLECTOR_STATUS_OK


@dataclass
class AnalysisContext:
    """Everything a prompt is built from, besides the user's own context."""
    mode: Mode
    primary: TimeframeContext
    others: List[TimeframeContext] = field(default_factory=list)
    bursts: List[SwitchBurst] = field(default_factory=list)
    breakdown: List[Dict] = field(default_factory=list)
    period_label: str = ""


@dataclass(frozen=True)
class ModelReply:
    """A validated model reply."""
    summary: str
    focus_score: Optional[float] = None
    state: Optional[str] = None


_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_SUMMARY_FIELD_RE = re.compile(r'"?(?:professional_)?summary"?\s*:\s*"((?:[^"\\]|\\.)+)"', re.IGNORECASE)
_SUMMARY_LINE_RE = re.compile(r"^\s*SUMMARY:\s*(.+)$", re.IGNORECASE | re.MULTILINE)


def _reply_from_mapping(data) -> Optional[ModelReply]:
    """Validate a decoded JSON reply, or return None if it is unusable."""
    if not isinstance(data, dict):
        return None
    summary = data.get("summary") or data.get("professional_summary")
    if not isinstance(summary, str) or not summary.strip():
        return None

    focus = data.get("focus_score")
    if isinstance(focus, bool) or not isinstance(focus, (int, float)) or not 0 <= focus <= 100:
        focus = None

    state = data.get("state") or data.get("current_state")
    if not isinstance(state, str):
        state = None

    return ModelReply(summary=summary.strip(), focus_score=focus, state=state)


def parse_reply(text: str) -> ModelReply:
    """Parse a model reply, strictly first and leniently second.

    Raises:
        SummarizerUnavailable: If no summary string can be recovered.
    """
    if not isinstance(text, str) or not text.strip():
        raise SummarizerUnavailable("Model returned an empty reply")

    cleaned = _FENCE_RE.sub("", text.strip()).strip()

    # Strict: the whole reply is the JSON object
    try:
        reply = _reply_from_mapping(json.loads(cleaned))
        if reply:
            return reply
    except ValueError:
        pass

    # Lenient: a JSON object embedded in prose
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            reply = _reply_from_mapping(json.loads(cleaned[start:end + 1]))
            if reply:
                logger.debug("Recovered summary from embedded JSON")
                return reply
        except ValueError:
            pass

    match = _SUMMARY_FIELD_RE.search(cleaned)
    if match:
        try:
            summary = json.loads(f'"{match.group(1)}"')
        except ValueError:
            summary = match.group(1)
        if summary.strip():
            logger.debug("Recovered summary from a summary field fragment")
            return ModelReply(summary=summary.strip())

    match = _SUMMARY_LINE_RE.search(cleaned)
    if match and match.group(1).strip():
        logger.debug("Recovered summary from a SUMMARY: line")
        return ModelReply(summary=match.group(1).strip())

    raise SummarizerUnavailable("Model reply did not contain a summary")


def _format_duration(seconds: float) -> str:
    """Format seconds as human readable duration."""
    if not seconds:
        return "0s"
    seconds = float(seconds)
    if seconds < 60:
        return f"{int(seconds)}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{mins}m {secs}s" if secs else f"{mins}m"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


def _truncate_title(title: str, max_len: int = 50) -> str:
    """Truncate and clean window title for display."""
    if not title:
        return ""
    for suffix in [' - Google Chrome', ' - Mozilla Firefox', ' - Visual Studio Code',
                   ' — Mozilla Firefox', ' - Chromium', ' - Brave']:
        title = title.replace(suffix, '')
    if len(title) > max_len:
        return title[:max_len - 3] + '...'
    return title


def _describe_classification(result: ClassificationResult) -> str:
    shares = result.percentages()
    return (
        f"state={result.state.value}, focus_score={result.focus_score:.0f}/100, "
        f"active={result.active_minutes:.1f}min "
        f"(work {shares['work']:.0f}%, communication {shares['communication']:.0f}%, "
        f"distraction {shares['distraction']:.0f}%)"
    )


def build_prompt(classification: ClassificationResult, context: AnalysisContext,
                 user_context: str) -> str:
    """Build the single structured prompt for one cycle."""
    primary = context.primary
    period = context.period_label or primary.timeframe.label

    lines = [
        f"Analyze the user's computer activity for the {period}.",
        MODE_INSTRUCTIONS.get(context.mode, MODE_INSTRUCTIONS[Mode.GHOST]),
        "",
        "USER CONTEXT:",
        user_context.strip() or "No additional context provided.",
        "",
        "CLASSIFICATION:",
        _describe_classification(classification),
        "",
        "TIMELINE (merged, AFK time removed):",
    ]

    events = sorted(primary.events, key=lambda e: e.start)
    if events:
        shown = events[-MAX_TIMELINE_EVENTS:]
        if len(events) > len(shown):
            lines.append(f"({len(events) - len(shown)} earlier events omitted)")
        for event in shown:
            local_start = event.start.astimezone().strftime("%H:%M")
            title = _truncate_title(event.title)
            label = f"{event.app_name} - {title}" if title and title != event.app_name else event.app_name
            lines.append(f"- {local_start} {label} ({_format_duration(event.seconds)})")
    else:
        lines.append("No active events.")

    if context.breakdown:
        lines.append("")
        lines.append("TIME PER APP:")
        for entry in context.breakdown:
            lines.append(
                f"- {entry['app_name']}: {entry['minutes']:.1f}min "
                f"[{entry['category']}, score {entry['productivity_score']}]"
            )

    lines.append("")
    lines.append("RAPID CONTEXT SWITCHING:")
    if context.bursts:
        for burst in context.bursts:
            lines.append(
                f"- {burst.start.astimezone():%H:%M}-{burst.end.astimezone():%H:%M}: "
                f"{burst.switches} switches between {', '.join(burst.apps[:6])}"
            )
    else:
        lines.append("None detected.")

    if context.others:
        lines.append("")
        lines.append("OTHER TIMEFRAMES:")
        for other in context.others:
            if other.status == COLLECTOR_STATUS_OK:
                lines.append(f"- {other.timeframe.label}: {_describe_classification(other.classification)}")
            else:
                lines.append(f"- {other.timeframe.label}: no data ({other.status})")

    lines.extend([
        "",
        "Return JSON only:",
        '{',
        '  "summary": "2-3 sentences addressed to the user",',
        '  "focus_score": 0-100,',
        '  "state": "productive|moderate|chilling|unproductive|afk"',
        '}',
    ])
    return "\n".join(lines)


def fallback_summary(classification: ClassificationResult, period_label: str,
                     status: str = COLLECTOR_STATUS_OK,
                     generated_at: Optional[datetime] = None) -> Summary:
    """Templated summary computed from the classification alone."""
    generated_at = generated_at or utcnow()
    shares = classification.percentages()

    if classification.active_minutes <= 0:
        if status == COLLECTOR_STATUS_UNAVAILABLE:
            text = (f"No activity data for the {period_label}: the activity tracker is offline. "
                    "Your summary will update once it is reachable again.")
        else:
            text = f"No active computer time was recorded for the {period_label}."
    else:
        text = (
            f"You spent {shares['work']:.0f}% of the {period_label} on productive work, "
            f"{shares['communication']:.0f}% communicating and "
            f"{shares['distraction']:.0f}% on distractions "
            f"({classification.active_minutes:.0f} active minutes). "
            f"Focus score: {classification.focus_score:.0f}/100, "
            f"state: {classification.state.value}."
        )

    return Summary(
        text=text,
        focus_score=classification.focus_score,
        generated_at=generated_at,
        period_label=period_label,
        source=SummarySource.FALLBACK,
        state=classification.state.value,
    )


class Summarizer:
    """Builds prompts, calls Ollama and falls back deterministically.

    Attributes:
        host: Ollama base URL.
        model: Model name.
        temperature: Sampling temperature.
        nudge_timeout: Timeout for reactive (nudge) cycles, seconds.
        analysis_timeout: Timeout for full analyses, seconds.
    """

    def __init__(self, resources: ResourceManager, host: str = "http://localhost:11434",
                 model: str = "mistral", temperature: float = 0.3, num_predict: int = 300,
                 nudge_timeout: float = 10, analysis_timeout: float = 30,
                 keep_alive: str = "5m", clock: Callable[[], datetime] = utcnow):
        self.resources = resources
        self.host = host.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.num_predict = num_predict
        self.nudge_timeout = nudge_timeout
        self.analysis_timeout = analysis_timeout
        self.keep_alive = keep_alive
        self._clock = clock

    @classmethod
    def from_config(cls, resources: ResourceManager, config) -> "Summarizer":
        """Build a summarizer from an ``OllamaConfig`` section."""
        return cls(
            resources,
            host=config.host,
            model=config.model,
            temperature=config.temperature,
            num_predict=config.num_predict,
            nudge_timeout=config.nudge_timeout_seconds,
            analysis_timeout=config.analysis_timeout_seconds,
            keep_alive=config.keep_alive,
        )

    @property
    def _session(self) -> requests.Session:
        return self.resources.client_for(self.host, retries=False)

    def _call_ollama_api(self, prompt: str, timeout: float) -> str:
        """Send one generate request.

        Raises:
            SummarizerUnavailable: On timeout, connection failure, HTTP error
                or a malformed response body.
        """
        payload = {
            "model": self.model,
            "prompt": prompt,
            "system": SYSTEM_PROMPT,
            "stream": False,
            "format": "json",
            "keep_alive": self.keep_alive,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.num_predict,
            },
        }

        start_time = time.time()
        try:
            response = self._session.post(f"{self.host}/api/generate", json=payload, timeout=timeout)
            response.raise_for_status()
            text = response.json()["response"]
            logger.info(f"LLM inference completed in {time.time() - start_time:.2f}s")
            return text
        except requests.exceptions.Timeout as e:
            raise SummarizerUnavailable(f"Ollama timed out after {timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise SummarizerUnavailable(f"Cannot connect to Ollama at {self.host}") from e
        except requests.exceptions.HTTPError as e:
            raise SummarizerUnavailable(f"Ollama API error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise SummarizerUnavailable(f"Ollama request failed: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise SummarizerUnavailable(f"Malformed Ollama response: {e}") from e

    def summarize(self, classification: ClassificationResult, context: AnalysisContext,
                  user_context: str = "", reactive: bool = False) -> Summary:
        """Produce a Summary for one cycle. Never raises.

        Args:
            classification: Result for the primary timeframe.
            context: Timeline, switch bursts and other timeframes.
            user_context: Free text for the active mode.
            reactive: Use the short nudge timeout instead of the analysis one.

        Returns:
            A ``source=llm`` summary when the model answered with a valid
            reply, otherwise a ``source=fallback`` one.
        """
        period_label = context.period_label or context.primary.timeframe.label
        status = context.primary.status
        if status != COLLECTOR_STATUS_OK:
            logger.warning(f"Activity data {status} for {period_label}, using fallback summary")
            return fallback_summary(classification, period_label, status, self._clock())

        timeout = self.nudge_timeout if reactive else self.analysis_timeout
        try:
            prompt = build_prompt(classification, context, user_context)
            reply = parse_reply(self._call_ollama_api(prompt, timeout))
        except SummarizerUnavailable as e:
            logger.warning(f"Summarizer unavailable, using fallback: {e}")
            return fallback_summary(classification, period_label, status, self._clock())

        if reply.focus_score is not None and abs(reply.focus_score - classification.focus_score) > 25:
            logger.debug(
                f"Model focus estimate {reply.focus_score} differs from computed "
                f"{classification.focus_score}"
            )

        return Summary(
            text=reply.summary,
            focus_score=classification.focus_score,
            generated_at=self._clock(),
            period_label=period_label,
            source=SummarySource.LLM,
            state=classification.state.value,
        )

    def suggest_categories(self, app_names: Sequence[str], limit: int = 10) -> List[Dict]:
        """Ask the model to categorize unknown apps.

        Returns:
            Records ready for ``CategoryStore.bulk_update``. They are not
            validated here; the store rejects the whole batch if one is bad.

        Raises:
            SummarizerUnavailable: If the model is unreachable or its reply
                is not a JSON object of app entries.
        """
        apps = list(app_names)[:limit]
        if not apps:
            return []

        prompt = (
            "Categorize these applications into one of these categories: work, "
            "communication, entertainment, development, productivity, system, other.\n\n"
            "Apps to categorize:\n" + "\n".join(apps) + "\n\n"
            "Respond with JSON only, in this format:\n"
            '{"app_name": {"category": "category_name", "subcategory": "optional_subcategory", '
            '"productivity_score": 0-100}}\n\n'
            "Example:\n"
            '{"discord": {"category": "communication", "subcategory": "chat", "productivity_score": 40}, '
            '"code": {"category": "development", "subcategory": "ide", "productivity_score": 90}}'
        )
        text = self._call_ollama_api(prompt, self.analysis_timeout)
        start, end = text.find("{"), text.rfind("}")
        try:
            data = json.loads(text[start:end + 1]) if start != -1 and end > start else None
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise SummarizerUnavailable("Category reply was not a JSON object")

        records = []
        for app_name, entry in data.items():
            if not isinstance(entry, dict):
                continue
            record = {"app_name": app_name}
            for key in ("category", "subcategory", "productivity_score"):
                if key in entry:
                    record[key] = entry[key]
            records.append(record)
        return records

    def list_models(self) -> List[str]:
        """Model names advertised by the Ollama server.

        Raises:
            SummarizerUnavailable: If the server cannot be queried.
        """
        try:
            response = self._session.get(f"{self.host}/api/tags", timeout=5)
            response.raise_for_status()
            return [m.get("name", "") for m in response.json().get("models", [])]
        except (requests.exceptions.RequestException, ValueError, AttributeError) as e:
            raise SummarizerUnavailable(f"Cannot list Ollama models: {e}") from e

    def is_available(self) -> bool:
        """Check that Ollama answers and the configured model is installed."""
        try:
            names = self.list_models()
        except SummarizerUnavailable as e:
            logger.warning(str(e))
            return False
        model_base = self.model.split(":")[0]
        if not any(name.startswith(model_base) for name in names):
            logger.warning(f"Model {self.model} not found in Ollama")
            return False
        return True
