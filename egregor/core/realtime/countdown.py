"""
Pure countdown and progress derivation.

Everything here is a function of (run state, script, now). The room's display
tick calls these to refresh what the viewer sees; nothing here writes or
schedules anything, so each function can be tested without a timer running.
"""

from __future__ import annotations

import json
import math
from datetime import datetime
from typing import Any, Optional

from egregor.core.realtime.schemas import RunMode, RunState, Script, ScriptSection


def parse_script(raw: Any) -> Optional[Script]:
    """
    Parse stored script JSON (string or dict) into a usable ``Script``.

    Sections whose minutes are missing, non-numeric or not positive are
    dropped. Returns None when nothing usable remains, which the room treats
    as "no script attached".
    """
    if not raw:
        return None
    obj = raw
    if isinstance(raw, str):
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError:
            return None
    if not isinstance(obj, dict) or not isinstance(obj.get("sections"), list):
        return None

    sections = []
    for s in obj["sections"]:
        if not isinstance(s, dict):
            continue
        try:
            raw_minutes = s.get("minutes")
            minutes = float(1 if raw_minutes is None else raw_minutes)
        except (TypeError, ValueError):
            continue
        if not math.isfinite(minutes) or minutes <= 0:
            continue
        sections.append(
            ScriptSection(
                name=str(s.get("name") or "Section"),
                minutes=minutes,
                text=str(s.get("text") or ""),
            )
        )
    if not sections:
        return None

    try:
        duration = float(obj.get("durationMinutes") or 0)
    except (TypeError, ValueError):
        duration = 0.0
    if not math.isfinite(duration) or duration <= 0:
        duration = sum(s.minutes for s in sections)

    notes = obj.get("speakerNotes")
    return Script(
        title=str(obj.get("title") or "Guided Intention Script"),
        duration_minutes=duration,
        tone=str(obj.get("tone") or "calm"),
        sections=sections,
        speaker_notes=str(notes) if notes else None,
    )


def clamp_section_index(index: int, section_count: int) -> int:
    if section_count <= 0:
        return 0
    return min(max(0, index), section_count - 1)


def section_duration_sec(section: ScriptSection) -> int:
    return max(1, math.floor(section.minutes * 60))


def total_duration_sec(script: Script) -> int:
    return sum(section_duration_sec(s) for s in script.sections)


def seconds_since(started_at: datetime, now: datetime) -> int:
    """Whole seconds elapsed; never negative even if ``now`` lags the stamp."""
    return max(0, math.floor((now - started_at).total_seconds()))


def elapsed_in_section(state: RunState, now: datetime) -> int:
    if state.mode is RunMode.RUNNING and state.started_at is not None:
        return state.elapsed_before_pause_sec + seconds_since(state.started_at, now)
    return state.elapsed_before_pause_sec


def seconds_left(state: RunState, script: Optional[Script], now: datetime) -> int:
    if script is None:
        return 0
    idx = clamp_section_index(state.section_index, len(script.sections))
    duration = section_duration_sec(script.sections[idx])
    return max(0, duration - elapsed_in_section(state, now))


def section_progress(state: RunState, script: Optional[Script], now: datetime) -> float:
    """Fraction of the live section elapsed, in [0, 1]; 1.0 once ended."""
    if script is None:
        return 0.0
    if state.mode is RunMode.ENDED:
        return 1.0
    idx = clamp_section_index(state.section_index, len(script.sections))
    duration = section_duration_sec(script.sections[idx])
    return min(1.0, max(0.0, elapsed_in_section(state, now) / duration))


def total_progress(state: RunState, script: Optional[Script], now: datetime) -> float:
    """Fraction of the whole script elapsed, in [0, 1]; 1.0 once ended."""
    if script is None:
        return 0.0
    if state.mode is RunMode.ENDED:
        return 1.0
    total = total_duration_sec(script)
    if total <= 0:
        return 0.0
    idx = clamp_section_index(state.section_index, len(script.sections))
    completed = sum(section_duration_sec(s) for s in script.sections[:idx])
    within = min(elapsed_in_section(state, now), section_duration_sec(script.sections[idx]))
    return min(1.0, max(0.0, (completed + within) / total))


def run_status_label(state: RunState, script: Optional[Script]) -> str:
    if script is None:
        return "No script attached"
    idx = clamp_section_index(state.section_index, len(script.sections))
    position = f"Section {idx + 1} of {len(script.sections)}"
    if state.mode is RunMode.RUNNING:
        return f"Live · {position}"
    if state.mode is RunMode.PAUSED:
        return f"Paused · {position}"
    if state.mode is RunMode.ENDED:
        return "Session ended"
    return "Waiting for host to start"


def format_seconds(total: int) -> str:
    s = max(0, int(total))
    return f"{s // 60:02d}:{s % 60:02d}"
