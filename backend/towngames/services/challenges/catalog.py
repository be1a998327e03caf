"""Challenge catalog and problem banks.

Each challenge type is configuration: a catalog entry in
``data/challenges.json`` plus a problem bank ``data/banks/<key>.json``
holding ``{tier: [{id, prompt, answer, explanation}]}``. Everything is
loaded and validated once at app startup; a bad catalog is a fatal
``CatalogError``, never a runtime fault.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import CatalogError, OutOfRange

DATA_DIR = Path(__file__).resolve().parents[2] / 'data'
DEFAULT_CATALOG_PATH = DATA_DIR / 'challenges.json'
DEFAULT_BANK_DIR = DATA_DIR / 'banks'


@dataclass(frozen=True)
class Problem:
    id: str
    prompt: str
    answer: Any
    explanation: Optional[str] = None

    def to_public(self, index: int) -> Dict[str, Any]:
        # Never includes the answer or the explanation (explanations spell it out)
        return {'index': index, 'id': self.id, 'prompt': self.prompt}

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'prompt': self.prompt,
            'answer': self.answer,
            'explanation': self.explanation,
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> 'Problem':
        return cls(
            id=str(data['id']),
            prompt=data['prompt'],
            answer=data['answer'],
            explanation=data.get('explanation'),
        )


@dataclass(frozen=True)
class StreakTier:
    min_streak: int
    multiplier: float


@dataclass(frozen=True)
class RewardTable:
    base_rate: float
    xp_rate: float
    difficulty_multipliers: Dict[str, float]
    streak_bonuses: Tuple[StreakTier, ...] = ()
    max_earnings: Optional[float] = None
    doubles_day: bool = False


@dataclass(frozen=True)
class ChallengeType:
    key: str
    title: str
    rewards: RewardTable
    daily_limit: int
    problem_count: int
    job: Optional[str] = None
    time_limit_seconds: Optional[int] = None
    max_problems: Optional[int] = None

    @property
    def difficulties(self) -> List[str]:
        return list(self.rewards.difficulty_multipliers)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'challenge_type': self.key,
            'title': self.title,
            'job': self.job,
            'difficulties': self.difficulties,
            'daily_limit': self.daily_limit,
            'time_limit': self.time_limit_seconds,
            'max_problems': self.max_problems,
        }


@dataclass
class ChallengeCatalog:
    """Challenge types keyed by name, each with its problem bank."""

    types: Dict[str, ChallengeType] = field(default_factory=dict)
    banks: Dict[Tuple[str, str], Tuple[Problem, ...]] = field(default_factory=dict)

    def get(self, challenge_type: str) -> ChallengeType:
        ctype = self.types.get(challenge_type)
        if ctype is None:
            raise OutOfRange(f'Unknown challenge type: {challenge_type}')
        return ctype

    def bucket(self, challenge_type: str, difficulty: str) -> Tuple[Problem, ...]:
        ctype = self.get(challenge_type)
        if difficulty not in ctype.rewards.difficulty_multipliers:
            raise OutOfRange('Invalid difficulty level')
        return self.banks[(challenge_type, difficulty)]

    def summary(self) -> List[Dict[str, Any]]:
        out = []
        for key in sorted(self.types):
            entry = self.types[key].to_dict()
            entry['bank_sizes'] = {
                tier: len(self.banks[(key, tier)]) for tier in self.types[key].difficulties
            }
            out.append(entry)
        return out


def _parse_rewards(key: str, raw: Dict[str, Any]) -> RewardTable:
    multipliers = raw.get('difficulty_multipliers') or {}
    if not multipliers:
        raise CatalogError(f'{key}: rewards.difficulty_multipliers must name at least one tier')
    tiers = sorted(
        (StreakTier(int(t['min_streak']), float(t['multiplier'])) for t in raw.get('streak_bonuses', [])),
        key=lambda t: t.min_streak,
    )
    max_earnings = raw.get('max_earnings')
    return RewardTable(
        base_rate=float(raw.get('base_rate', 1.0)),
        xp_rate=float(raw.get('xp_rate', 0.0)),
        difficulty_multipliers={str(k): float(v) for k, v in multipliers.items()},
        streak_bonuses=tuple(tiers),
        max_earnings=float(max_earnings) if max_earnings is not None else None,
        doubles_day=bool(raw.get('doubles_day', False)),
    )


def _optional_int(key: str, raw: Dict[str, Any], name: str) -> Optional[int]:
    value = raw.get(name)
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise CatalogError(f'{key}: {name} must be a whole number')


def _parse_type(key: str, raw: Dict[str, Any], default_daily_limit: int) -> ChallengeType:
    ctype = ChallengeType(
        key=key,
        title=raw.get('title') or key.replace('-', ' ').title(),
        job=raw.get('job'),
        rewards=_parse_rewards(key, raw.get('rewards') or {}),
        daily_limit=int(raw.get('daily_limit', default_daily_limit)),
        problem_count=int(raw.get('problem_count', raw.get('max_problems') or 0)),
        time_limit_seconds=_optional_int(key, raw, 'time_limit_seconds'),
        max_problems=_optional_int(key, raw, 'max_problems'),
    )
    if ctype.daily_limit < 1:
        raise CatalogError(f'{key}: daily_limit must be >= 1')
    if ctype.problem_count < 1:
        raise CatalogError(f'{key}: problem_count must be >= 1')
    if not ctype.time_limit_seconds and not ctype.max_problems:
        raise CatalogError(f'{key}: set time_limit_seconds or max_problems so sessions terminate')
    if ctype.max_problems and ctype.max_problems > ctype.problem_count:
        raise CatalogError(f'{key}: max_problems cannot exceed problem_count')
    return ctype


def _parse_bank(ctype: ChallengeType, path: Path) -> Dict[Tuple[str, str], Tuple[Problem, ...]]:
    if not path.exists():
        raise CatalogError(f'{ctype.key}: problem bank not found at {path}')
    raw = json.loads(path.read_text(encoding='utf-8'))
    banks = {}
    seen_ids = set()
    for tier in ctype.difficulties:
        entries = raw.get(tier) or []
        if not entries:
            raise CatalogError(f'{ctype.key}: difficulty tier "{tier}" has no problems')
        problems = []
        for n, entry in enumerate(entries):
            pid = str(entry.get('id') or f'{ctype.key}-{tier}-{n + 1}')
            if pid in seen_ids:
                raise CatalogError(f'{ctype.key}: duplicate problem id {pid}')
            if not entry.get('prompt') or 'answer' not in entry:
                raise CatalogError(f'{ctype.key}: problem {pid} needs a prompt and an answer')
            seen_ids.add(pid)
            problems.append(Problem(
                id=pid,
                prompt=entry['prompt'],
                answer=entry['answer'],
                explanation=entry.get('explanation'),
            ))
        banks[(ctype.key, tier)] = tuple(problems)
    return banks


def load_catalog(catalog_path=None, bank_dir=None, default_daily_limit: int = 3) -> ChallengeCatalog:
    catalog_path = Path(catalog_path) if catalog_path else DEFAULT_CATALOG_PATH
    bank_dir = Path(bank_dir) if bank_dir else DEFAULT_BANK_DIR
    if not catalog_path.exists():
        raise CatalogError(f'Challenge catalog not found at {catalog_path}')
    try:
        raw = json.loads(catalog_path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as exc:
        raise CatalogError(f'Challenge catalog is not valid JSON: {exc}') from exc

    catalog = ChallengeCatalog()
    for key, entry in (raw.get('challenges') or {}).items():
        ctype = _parse_type(key, entry, default_daily_limit)
        catalog.types[key] = ctype
        catalog.banks.update(_parse_bank(ctype, bank_dir / entry.get('bank', f'{key}.json')))
    if not catalog.types:
        raise CatalogError('Challenge catalog defines no challenge types')
    return catalog
