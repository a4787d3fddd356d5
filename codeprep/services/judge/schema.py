from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel

# Judge0 CE language ids
JUDGE0_LANGUAGE_IDS: Dict[str, int] = {
    "cpp": 54,
    "java": 62,
    "javascript": 63,
    "python": 71,
}

LANGUAGE_ALIASES: Dict[str, str] = {
    "py": "python",
    "python3": "python",
    "js": "javascript",
    "node": "javascript",
    "c++": "cpp",
}


def normalize_language(language: Optional[str]) -> str:
    key = (language or "").strip().lower()
    return LANGUAGE_ALIASES.get(key, key)


class RunOutcome(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    time_ms: Optional[float] = None
    compile_error: bool = False
    timed_out: bool = False

    @property
    def crashed(self) -> bool:
        return self.compile_error or self.timed_out or self.exit_code != 0
