"""Heuristics deriving descriptive metadata from lecture text."""

from __future__ import annotations

import math
import re
from typing import Optional


DIFFICULTY_LEVELS = ("Easy", "Medium", "Hard")

_BASIC_TERMS = (
    "variable", "function", "loop", "array", "list", "string", "integer", "boolean",
    "if-else", "condition", "input", "output", "print", "class", "object", "method",
    "attribute", "property", "parameter", "return", "python", "java", "javascript",
    "compiler", "interpreter", "syntax", "data type", "operator", "expression",
    "stack", "queue", "linked list", "tree", "sorting", "searching",
)

_INTERMEDIATE_TERMS = (
    "algorithm", "recursion", "data structure", "complexity", "binary tree", "hash table",
    "graph", "dynamic programming", "object-oriented", "inheritance", "polymorphism",
    "encapsulation", "exception", "interface", "abstract class", "database", "query",
    "vector", "matrix", "linear algebra", "probability", "statistics", "calculus",
    "big o notation", "optimization", "concurrent", "asynchronous", "api", "framework",
)

_ADVANCED_TERMS = (
    "quantum", "neural network", "machine learning", "artificial intelligence",
    "compiler design", "distributed systems", "parallel computing", "cryptography",
    "formal verification", "lambda calculus", "automata theory", "turing machine",
    "linear programming", "computational geometry", "np-complete", "np-hard",
    "approximation algorithm", "heuristic", "tensor", "differential equation",
    "stochastic process", "markov chain", "bayesian", "eigenvalue", "eigenvector",
    "multivariate statistics", "numerical methods", "blockchain", "virtual machine",
)

_INTRODUCTORY_PHRASES = (
    "introduction to", "basics of", "fundamentals of", "getting started with",
    "beginning", "elementary", "first steps", "primer", "basic concepts",
    "learn how to", "overview of", "what is", "understand",
)

_ADVANCED_PHRASES = (
    "advanced topics", "in-depth", "deep dive", "complex", "theoretical foundation",
    "graduate level", "research perspective", "state of the art", "cutting edge",
    "specialized",
)

_MATH_SYMBOLS = (
    "=", "+", "-", "*", "/", "^", "∫", "∂", "∑", "θ", "α", "β", "δ", "Δ", "ε", "ƒ",
    "∏", "√", "≈", "≤", "≥", "±",
)

_FORMULA_PATTERNS = (
    re.compile(r"f\(x\)"),
    re.compile(r"\w+\([^)]+\)"),
    re.compile(r"\b[a-z]_\d+\b"),
    re.compile(r"\b[a-z]\^\d+\b"),
)

_CODE_INDICATORS = (
    "def ", "function ", "class ", "import ", "from ", "var ", "let ", "const ",
    "for(", "while(", "if(", "else{", "return ", "){", "};", "});",
    "print(", "console.log", "system.out", "cout <<", "#!/usr", "#include",
)

_PROGRAMMING_KEYWORDS = re.compile(r"\b(?:code|program|programming|algorithm|implement)\b")

_READING_SPEED_WPM = {"Easy": 200, "Medium": 150, "Hard": 75}

_HEADING_PATTERN = re.compile(r"^\s{0,3}#{1,6}\s+(?P<title>.+?)\s*#*\s*$")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def word_count(text: str) -> int:
    return len(text.split())


def determine_difficulty(text: str) -> str:
    """Classify lecture text as ``Easy``, ``Medium`` or ``Hard``.

    The score weighs the density of introductory, intermediate and advanced
    vocabulary, phrasing that signals the level of the material, and the amount of
    mathematical notation. Programming material with code samples is discounted
    for its operators so that code does not read as mathematics.
    """

    lower = (text or "").lower()
    words = word_count(lower)
    if words == 0:
        return "Easy"

    def density(terms, scale: float) -> float:
        matched = sum(1 for term in terms if term in lower)
        return matched / words * scale

    basic = density(_BASIC_TERMS, 10000)
    intermediate = density(_INTERMEDIATE_TERMS, 10000)
    advanced = density(_ADVANCED_TERMS, 10000)

    symbols = sum(lower.count(symbol) for symbol in _MATH_SYMBOLS)
    formulas = sum(len(pattern.findall(lower)) for pattern in _FORMULA_PATTERNS)
    math_density = (symbols + formulas) / words * 1000

    score = advanced * 5 + intermediate * 2 - basic * 0.5
    if any(phrase in lower for phrase in _INTRODUCTORY_PHRASES):
        score -= 20
    if any(phrase in lower for phrase in _ADVANCED_PHRASES):
        score += 30
    score += min(30.0, math_density * 0.5)

    has_code = any(indicator in lower for indicator in _CODE_INDICATORS)
    if has_code and _PROGRAMMING_KEYWORDS.search(lower):
        score -= math_density * 0.3

    if score > 60:
        return "Hard"
    if score > 25:
        return "Medium"
    return "Easy"


def format_duration(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} minutes"
    hours, remainder = divmod(minutes, 60)
    label = f"{hours} hour{'s' if hours > 1 else ''}"
    return label if remainder == 0 else f"{label} {remainder} minutes"


def estimate_duration(text: str, *, difficulty: Optional[str] = None) -> str:
    """Estimate reading time for *text*, never less than five minutes."""

    level = difficulty if difficulty in _READING_SPEED_WPM else determine_difficulty(text)
    minutes = max(5, _round_half_up(word_count(text or "") / _READING_SPEED_WPM[level]))
    if level == "Hard":
        minutes += _round_half_up(minutes * 0.3)
    return format_duration(minutes)


def extract_title(text: str) -> str:
    """Return the first Markdown heading, falling back to the first non-empty line."""

    first_line = ""
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        match = _HEADING_PATTERN.match(line)
        if match:
            return match.group("title").strip()
        if not first_line:
            first_line = line.strip()
    return first_line[:200]


__all__ = [
    "DIFFICULTY_LEVELS",
    "determine_difficulty",
    "estimate_duration",
    "extract_title",
    "format_duration",
    "word_count",
]
