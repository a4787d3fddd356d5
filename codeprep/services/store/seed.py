from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from codeprep.config import Settings, configure_logging

from .service import SessionStore

DATA_DIR = Path(__file__).resolve().parents[2] / "data"
DEFAULT_BANK = DATA_DIR / "questions.yaml"

logger = logging.getLogger("codeprep.seed")


def load_bank(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Question bank {path} does not exist")
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


def _coding_questions(bank: Dict[str, Any]) -> List[Dict[str, Any]]:
    questions = bank.get("questions") or []
    return [dict(item) for item in questions if isinstance(item, dict)]


def _mcq_questions(bank: Dict[str, Any]) -> List[Dict[str, Any]]:
    questions = bank.get("mcq") or []
    return [dict(item) for item in questions if isinstance(item, dict)]


def seed_from_bank(
    store: SessionStore,
    bank: Dict[str, Any],
    *,
    session_id: Optional[str] = None,
    language: Optional[str] = None,
    duration_s: Optional[int] = None,
    quick_practice: bool = False,
) -> Tuple[str, Optional[str]]:
    """Create a coding session (and optionally a quick-practice run) from a parsed bank."""

    coding = _coding_questions(bank)
    if not coding:
        raise ValueError("The question bank has no coding questions")
    session = store.create_session(
        coding,
        session_id=session_id,
        language=language or bank.get("language"),
        duration_s=duration_s or int(bank.get("durationSeconds", 3600)),
    )
    practice_id: Optional[str] = None
    mcq = _mcq_questions(bank)
    if quick_practice and mcq:
        practice_id = store.create_quick_practice(mcq).session_id
    return session.session_id, practice_id


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Create an interview session from a YAML question bank")
    parser.add_argument("bank", nargs="?", default=str(DEFAULT_BANK), help="Path to the question bank")
    parser.add_argument("--db", dest="database_url", default=None, help="Database URL (defaults to env DATABASE_URL)")
    parser.add_argument("--session-id", dest="session_id", default=None, help="Use a fixed session id")
    parser.add_argument("--language", default=None, help="Preferred language recorded on the session")
    parser.add_argument("--duration", type=int, default=None, help="Session length in seconds")
    parser.add_argument(
        "--quick-practice",
        action="store_true",
        help="Also create a quick-practice run from the bank's mcq section",
    )
    parser.add_argument("--log-level", default=None, help="Overrides CODEPREP_LOG_LEVEL")
    args = parser.parse_args(argv)
    configure_logging(args.log_level or Settings.load().LOG_LEVEL)
    store = SessionStore(database_url=args.database_url)
    session_id, practice_id = seed_from_bank(
        store,
        load_bank(Path(args.bank)),
        session_id=args.session_id,
        language=args.language,
        duration_s=args.duration,
        quick_practice=args.quick_practice,
    )
    logger.info("Seeded session %s from %s", session_id, args.bank)
    print(session_id)
    if practice_id:
        print(practice_id)


if __name__ == "__main__":
    main()
