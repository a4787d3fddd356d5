from __future__ import annotations

import re
from typing import Dict, List, Tuple

from codeprep.services.scoring.schema import ComplexityAnalysis

# detected pattern -> (time, space, rank); rank feeds the code-quality metric
_PATTERNS: Dict[str, Tuple[str, str, int]] = {
    "nested_loops": ("O(n^2)", "O(1)", 4),
    "sorting": ("O(n log n)", "O(1)", 3),
    "hash_set": ("O(n)", "O(n)", 2),
    "two_pointers": ("O(n)", "O(1)", 2),
    "stack": ("O(n)", "O(n)", 2),
    "single_loop": ("O(n)", "O(1)", 2),
    "constant": ("O(1)", "O(1)", 1),
}

_LOOP_START = re.compile(r"^\s*(for|while)\b")
_BRACE_LOOP = re.compile(r"\b(for|while)\s*\(")


def _detect_nested_loops(source: str) -> bool:
    loop_stack: List[int] = []
    for line in source.splitlines():
        if not line.strip() or line.lstrip().startswith(("#", "//")):
            continue
        indent = len(line) - len(line.lstrip(" \t"))
        while loop_stack and indent <= loop_stack[-1]:
            loop_stack.pop()
        if _LOOP_START.match(line):
            if loop_stack:
                return True
            loop_stack.append(indent)
    return False


def _detect_sorting(lowered: str) -> bool:
    return ".sort(" in lowered or "sorted(" in lowered or "sort(" in lowered


def _detect_hash_usage(lowered: str) -> bool:
    if re.search(r"\b(set|dict|defaultdict|counter|map|unordered_map|unordered_set|hashmap|hashset)\s*[(<]", lowered):
        return True
    return bool(re.search(r"\{[^}]*:\s*[^}]*\}", lowered))


def _detect_two_pointers(lowered: str) -> bool:
    patterns = [
        r"while\s*\(?\s*left\s*[<!=]",
        r"while\s*\(?\s*right\s*[>!=]",
        r"left\s*\+=\s*1",
        r"right\s*-=\s*1",
        r"\bi\s*<\s*j\b",
    ]
    return any(re.search(pattern, lowered) for pattern in patterns)


def _detect_stack_usage(lowered: str) -> bool:
    if re.search(r"stack\s*=\s*\[\]", lowered) or "stack<" in lowered:
        return True
    return bool(re.search(r"stack\.(append|push)\(", lowered) and re.search(r"stack\.pop\(", lowered))


def _suggestions(detected: str) -> List[str]:
    if detected == "nested_loops":
        return ["Consider optimizing nested loops, a hash map often removes the inner scan"]
    if detected == "sorting":
        return ["Sorting dominates the runtime; check whether a linear pass is enough"]
    return []


def analyze_complexity(source: str) -> ComplexityAnalysis:
    """Cheap heuristic classification of a submission's asymptotic cost."""

    if not source.strip():
        return ComplexityAnalysis()
    lowered = source.lower()
    brace_loops = len(_BRACE_LOOP.findall(lowered))
    if _detect_nested_loops(source) or (brace_loops >= 2 and _nested_braces(source)):
        detected = "nested_loops"
    elif _detect_sorting(lowered):
        detected = "sorting"
    elif _detect_hash_usage(lowered):
        detected = "hash_set"
    elif _detect_two_pointers(lowered):
        detected = "two_pointers"
    elif _detect_stack_usage(lowered):
        detected = "stack"
    elif brace_loops or re.search(r"^\s*(for|while)\b", source, re.MULTILINE):
        detected = "single_loop"
    else:
        detected = "constant"
    time_c, space_c, rank = _PATTERNS[detected]
    return ComplexityAnalysis(
        time_complexity=time_c,
        space_complexity=space_c,
        detected_algorithm=detected,
        complexity=rank,
        suggestions=_suggestions(detected),
    )


def _nested_braces(source: str) -> bool:
    """True when a brace-delimited loop body contains another loop."""

    depth = 0
    loop_depths: List[int] = []
    for match in re.finditer(r"\b(for|while)\s*\(|\{|\}", source):
        token = match.group(0)
        if token == "{":
            depth += 1
        elif token == "}":
            depth -= 1
            while loop_depths and loop_depths[-1] > depth:
                loop_depths.pop()
        else:
            if loop_depths:
                return True
            loop_depths.append(depth + 1)
    return False
