"""
Narrative oracle contract, response validation and deterministic fallback.

The narrative is produced by an external text generator.  The engine only
builds the prompt and treats whatever comes back as untrusted JSON:

    {
      "favored": "home" | "away" | "draw",
      "confidence": "high" | "medium" | "low",      (strong/moderate/slight accepted)
      "game_flow": "...",
      "snapshot": ["...", ...],
      "risk_factors": ["...", ...],
      "probabilities": {"home": 0.5, "away": 0.3, "draw": 0.2}   (optional)
    }

Anything malformed raises ``NarrativeServiceFailure`` and
``resolve_narrative`` falls back to ``StatsNarrativeOracle``, which derives
the story from season records, form and head-to-head alone.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from backend.core.errors import NarrativeServiceFailure
from backend.core.signals import MIN_H2H_MEETINGS, RawMatchInput, UniversalSignals, form_results
from backend.core.sport_config import DEFAULT_CONFIG, EngineConfig

logger = logging.getLogger(__name__)

CONFIDENCE_ALIASES = {
    "strong": "high",
    "moderate": "medium",
    "slight": "low",
}
CONFIDENCE_STRENGTH = {"high": "strong", "medium": "moderate", "low": "slight"}

LOW_CLARITY_CAVEAT = 60
SCORING_GAP = 0.3
WIN_RATE_GAP = 0.1
DEFAULT_WIN_RATE = 0.33

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_UNICODE_FIXES = {
    "‘": "'", "’": "'",
    "“": '"', "”": '"',
    "–": "-", "—": "--",
    "…": "...",
}


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NarrativePrompt:
    """Everything the oracle (or the fallback) needs for one match."""

    raw: RawMatchInput
    signals: UniversalSignals
    has_draw: bool
    league_name: str
    kickoff: str = ""
    scoring_unit: str = "goals"
    league_hint: str = ""
    market_summary: str = ""

    def render(self) -> str:
        raw = self.raw
        favored_options = '"home" | "away" | "draw"' if self.has_draw else '"home" | "away"'
        draw_rule = (
            "Draws are possible in this sport."
            if self.has_draw
            else "This sport has NO DRAWS - one team MUST win. Do NOT suggest a draw."
        )
        lines = [
            f"MATCH: {raw.home_team} vs {raw.away_team}",
            f"COMPETITION: {self.league_name}",
            f"DATE: {self.kickoff}",
            "",
            "SIGNALS:",
            self.signals.to_prompt_json(),
            f"Clarity: {self.signals.clarity_score}/100 ({self.signals.confidence})",
        ]
        if raw.home_form or raw.away_form:
            lines.append(f"Form (most recent first): {raw.home_team} {raw.home_form or '-'}, "
                         f"{raw.away_team} {raw.away_form or '-'}")
        if raw.h2h and raw.h2h.total:
            draws = f", {raw.h2h.draws} draws" if self.has_draw else ""
            lines.append(
                f"Head to head ({raw.h2h.total} meetings): {raw.home_team} {raw.h2h.home_wins} wins, "
                f"{raw.away_team} {raw.h2h.away_wins} wins{draws}"
            )
        if self.market_summary:
            lines.append(f"Market: {self.market_summary}")
        if self.league_hint:
            lines.extend(["", self.league_hint])
        lines.extend([
            "",
            "Return JSON:",
            "{",
            f'  "favored": {favored_options},',
            '  "confidence": "high" | "medium" | "low",',
            '  "game_flow": "2-3 sentences on how the match is likely to unfold",',
            '  "snapshot": ["3-4 short data-backed bullets"],',
            '  "risk_factors": ["what could break the read"]',
            "}",
            "",
            f'Use "{self.scoring_unit}" for scoring. {draw_rule} No betting advice.',
        ])
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class NarrativePayload(BaseModel):
    favored: Literal["home", "away", "draw"]
    confidence: Literal["high", "medium", "low"] = "medium"
    game_flow: str = ""
    snapshot: List[str] = Field(default_factory=list)
    risk_factors: List[str] = Field(default_factory=list)
    probabilities: Optional[Dict[str, float]] = None

    @field_validator("favored", mode="before")
    @classmethod
    def normalize_favored(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("confidence", mode="before")
    @classmethod
    def normalize_confidence(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return CONFIDENCE_ALIASES.get(v, v)
        return v

    @field_validator("probabilities")
    @classmethod
    def check_probabilities(cls, v):
        if v is None:
            return v
        for outcome, p in v.items():
            if not 0.0 <= p <= 1.0:
                raise ValueError(f"probability for {outcome} out of range: {p}")
        return v


def narrative_to_dict(payload: NarrativePayload, source: str) -> Dict:
    data = payload.model_dump()
    data["strength"] = CONFIDENCE_STRENGTH.get(payload.confidence, "moderate")
    data["source"] = source
    return data


def _clean(raw: str) -> str:
    text = raw.strip()
    text = _FENCE_RE.sub("", text).strip()
    for bad, good in _UNICODE_FIXES.items():
        text = text.replace(bad, good)
    return text


def parse_narrative(raw: Optional[str], has_draw: bool) -> NarrativePayload:
    """
    Validate oracle output.

    Markdown code fences and typographic quotes are tolerated.  A "draw"
    answer for a sport without draws is coerced to "home".

    Raises:
        NarrativeServiceFailure: On empty, non-JSON or schema-invalid output.
    """
    if not raw or not raw.strip():
        raise NarrativeServiceFailure("empty narrative response")
    try:
        data = json.loads(_clean(raw))
    except json.JSONDecodeError as e:
        raise NarrativeServiceFailure(f"narrative is not valid JSON: {e}") from e
    if isinstance(data, dict) and isinstance(data.get("story"), dict):
        data = {**data["story"], **{k: v for k, v in data.items() if k != "story"}}
    if not isinstance(data, dict):
        raise NarrativeServiceFailure("narrative JSON is not an object")

    try:
        payload = NarrativePayload.model_validate(data)
    except ValidationError as e:
        raise NarrativeServiceFailure(f"narrative failed validation: {e}") from e

    if not has_draw and payload.favored == "draw":
        logger.info("Oracle favoured a draw in a no-draw sport; coercing to home")
        payload = payload.model_copy(update={"favored": "home"})
    return payload


# ---------------------------------------------------------------------------
# Oracles
# ---------------------------------------------------------------------------

class NarrativeOracle(ABC):
    """External text generator; returns raw (untrusted) JSON text."""

    @abstractmethod
    def generate(self, prompt: NarrativePrompt) -> str:
        ...


class StatsNarrativeOracle(NarrativeOracle):
    """Deterministic narrative from season records, form and head-to-head."""

    def build(self, prompt: NarrativePrompt) -> NarrativePayload:
        raw = prompt.raw
        home, away = raw.home_team, raw.away_team
        home_rate = raw.home_record.win_rate if raw.home_record and raw.home_record.played else DEFAULT_WIN_RATE
        away_rate = raw.away_record.win_rate if raw.away_record and raw.away_record.played else DEFAULT_WIN_RATE

        if prompt.has_draw:
            if home_rate > away_rate + WIN_RATE_GAP:
                favored = "home"
            elif away_rate > home_rate + WIN_RATE_GAP:
                favored = "away"
            else:
                favored = "draw"
        else:
            favored = "home" if home_rate >= away_rate else "away"

        snapshot: List[str] = []
        home_results = form_results(raw.home_form)
        away_results = form_results(raw.away_form)
        if home_results or away_results:
            snapshot.append(
                f"Form: {home} {''.join(home_results[:5]) or 'n/a'} vs "
                f"{away} {''.join(away_results[:5]) or 'n/a'}"
            )

        if raw.home_record and raw.away_record and raw.home_record.played and raw.away_record.played:
            h_spg = raw.home_record.scored_per_game
            a_spg = raw.away_record.scored_per_game
            unit = prompt.scoring_unit
            if h_spg - a_spg > SCORING_GAP:
                snapshot.append(f"{home} outscoring {away}: {h_spg:.1f} vs {a_spg:.1f} {unit} per game")
            elif a_spg - h_spg > SCORING_GAP:
                snapshot.append(f"{away} outscoring {home}: {a_spg:.1f} vs {h_spg:.1f} {unit} per game")
            else:
                snapshot.append(f"Similar output: {h_spg:.1f} vs {a_spg:.1f} {unit} per game")

        if raw.h2h and raw.h2h.total >= MIN_H2H_MEETINGS:
            h2h_line = (
                f"H2H ({raw.h2h.total} meetings): {home} {raw.h2h.home_wins}, "
                f"{away} {raw.h2h.away_wins}"
            )
            if prompt.has_draw:
                h2h_line += f", draws {raw.h2h.draws}"
            snapshot.append(h2h_line)

        risk_factors: List[str] = []
        if prompt.signals.clarity_score < LOW_CLARITY_CAVEAT:
            risk_factors.append(
                f"Limited data clarity ({prompt.signals.clarity_score}/100); treat this read with caution"
            )
        if prompt.signals.availability.note:
            risk_factors.append(prompt.signals.availability.note)

        side_name = {"home": home, "away": away}.get(favored, "neither side")
        game_flow = (
            f"{home} host {away} in {prompt.league_name}. "
            f"{home} have won {home_rate:.0%} of their games this season, {away} {away_rate:.0%}. "
            f"On record and recent form, {side_name} appears to have a slight edge."
        )
        return NarrativePayload(
            favored=favored,
            confidence="medium",
            game_flow=game_flow,
            snapshot=snapshot,
            risk_factors=risk_factors,
        )

    def generate(self, prompt: NarrativePrompt) -> str:
        return self.build(prompt).model_dump_json()


def build_prompt(
    raw: RawMatchInput,
    signals: UniversalSignals,
    has_draw: bool,
    *,
    kickoff: str = "",
    market_summary: str = "",
    config: EngineConfig = DEFAULT_CONFIG,
) -> NarrativePrompt:
    """Prompt with the league's accuracy hint and the sport's scoring unit."""
    league = config.league(raw.sport)
    if league.key == "default":
        league = config.league(raw.league)
    return NarrativePrompt(
        raw=raw,
        signals=signals,
        has_draw=has_draw,
        league_name=raw.league or league.name,
        kickoff=kickoff,
        scoring_unit=config.sport(raw.sport).scoring_unit,
        league_hint=league.hint,
        market_summary=market_summary,
    )


def resolve_narrative(oracle: Optional[NarrativeOracle], prompt: NarrativePrompt) -> Dict:
    """Oracle narrative when it validates, otherwise the stats fallback."""
    if oracle is not None and not isinstance(oracle, StatsNarrativeOracle):
        try:
            payload = parse_narrative(oracle.generate(prompt), prompt.has_draw)
            return narrative_to_dict(payload, "oracle")
        except NarrativeServiceFailure as e:
            logger.warning("Narrative oracle output rejected for %s vs %s: %s",
                           prompt.raw.home_team, prompt.raw.away_team, e)
        except Exception as e:
            logger.warning("Narrative oracle failed for %s vs %s: %s",
                           prompt.raw.home_team, prompt.raw.away_team, e, exc_info=True)
    return narrative_to_dict(StatsNarrativeOracle().build(prompt), "fallback")
