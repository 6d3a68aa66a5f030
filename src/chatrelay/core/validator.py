from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Optional

from chatrelay.core.context import extract_first_json_object
from chatrelay.core.models import Task
from chatrelay.core.vocabulary import Vocabulary

logger = logging.getLogger("chatrelay.validator")

JSON_SIZE_LIMIT = 2 * 1024 * 1024
PATTERN_SIZE_LIMIT = 1024 * 1024


@dataclass
class OutputCheck:
    ok: bool
    reason: Optional[str] = None


def validate_output(task: Task, path: str, vocabulary: Vocabulary, language: str = "en") -> OutputCheck:
    """Quality gate for a collected response file.

    Streams the file line by line so large outputs are never fully held
    in memory (except for the bounded JSON and pattern checks).
    """
    if not os.path.exists(path):
        return OutputCheck(False, "FILE_NOT_FOUND: no response file was produced")

    rules = task.spec.validation
    size = os.path.getsize(path)
    if size < rules.min_length:
        return OutputCheck(False, f"TOO_SHORT: {size} bytes")

    wants_json = task.spec.config.output_format == "json" or rules.required_format == "json"
    if wants_json and size > JSON_SIZE_LIMIT:
        return OutputCheck(False, "FORMAT_ERROR: JSON output exceeds 2MB")

    forbidden: list[str] = []
    for term in [*vocabulary.get_terms("error_indicators", language), *rules.forbidden_terms]:
        lowered = term.lower()
        if lowered and lowered not in forbidden:
            forbidden.append(lowered)

    json_parts: list[str] = []
    with open(path, "r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            lowered = line.lower()
            hit = next((t for t in forbidden if t in lowered), None)
            if hit:
                logger.warning("Task %s output rejected for forbidden term %r", task.id, hit)
                return OutputCheck(False, f'FORBIDDEN_CONTENT: "{hit}"')
            if wants_json:
                json_parts.append(line)

    if wants_json:
        candidate = extract_first_json_object("".join(json_parts))
        if candidate == "{}" and "{" not in "".join(json_parts):
            return OutputCheck(False, "FORMAT_ERROR: no JSON object found")
        try:
            json.loads(candidate)
        except ValueError as exc:
            return OutputCheck(False, f"FORMAT_ERROR: invalid JSON ({exc})")

    if rules.required_pattern and size < PATTERN_SIZE_LIMIT:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            content = handle.read()
        try:
            matched = re.search(rules.required_pattern, content, re.IGNORECASE)
        except re.error as exc:
            return OutputCheck(False, f"PATTERN_INVALID: {exc}")
        if not matched:
            return OutputCheck(False, "PATTERN_MISMATCH: content does not match the required pattern")

    return OutputCheck(True)
