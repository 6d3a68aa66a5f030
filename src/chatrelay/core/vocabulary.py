"""Per-language UI vocabulary used by stall triage and output validation.

Terms are grouped by category (``error_indicators``, ``close_actions``,
``limit_indicators``, ``input_placeholders``). Lookups always union the
requested language with the ``en`` baseline. New terms can be learned at
runtime and are persisted to ``vocabulary.json``.
"""
from __future__ import annotations

import copy
import json
import logging
import re
import threading
from typing import Any, Dict, List, Optional

from chatrelay.core.atomic import write_json_atomic

logger = logging.getLogger("chatrelay.vocabulary")

BASELINE_LANG = "en"
BLOCKED_KEY = "blocked"

BASE_VOCABULARY: Dict[str, Any] = {
    "en": {
        "error_indicators": [
            "network error", "something went wrong", "policy violation",
            "connection lost", "error generating",
        ],
        "close_actions": ["ok", "okay", "next", "close", "dismiss", "accept", "skip", "done", "got it"],
        "limit_indicators": [
            "you've reached our limit", "you've hit your limit", "usage cap",
            "rate limit exceeded", "too many requests", "limit reached",
        ],
        "input_placeholders": ["message", "ask", "prompt", "type"],
    },
    "pt": {
        "error_indicators": ["erro de rede", "algo deu errado", "violação", "conexão perdida", "erro ao gerar"],
        "close_actions": ["próximo", "fechar", "entendi", "aceitar", "pular", "concluir", "ok"],
        "limit_indicators": ["limite atingido", "você atingiu o limite", "muitas solicitações"],
        "input_placeholders": ["mensagem", "pergunte", "digite", "conversar", "envie"],
    },
    BLOCKED_KEY: [
        "search", "find", "filter", "buscar", "pesquisar", "filtrar",
        "feedback", "report", "history", "histórico",
    ],
}


def normalize_lang(code: Optional[str]) -> str:
    """``pt-BR`` -> ``pt``, ``EN_us`` -> ``en``."""
    if not code or not isinstance(code, str):
        return BASELINE_LANG
    return re.split(r"[-_]", code)[0].lower() or BASELINE_LANG


class Vocabulary:
    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._data: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data
        data: Optional[Dict[str, Any]] = None
        if self.path:
            try:
                with open(self.path, "r", encoding="utf-8") as handle:
                    loaded = json.load(handle)
                if isinstance(loaded, dict):
                    data = loaded
            except FileNotFoundError:
                pass
            except (OSError, ValueError) as exc:
                logger.error("Vocabulary file unreadable, restoring baseline: %s", exc)
        if data is None:
            data = copy.deepcopy(BASE_VOCABULARY)
            self._persist(data)
        self._data = data
        return data

    def _persist(self, data: Dict[str, Any]) -> None:
        if not self.path:
            return
        try:
            write_json_atomic(self.path, data)
        except OSError as exc:
            logger.error("Failed to persist vocabulary: %s", exc)

    def get_terms(self, category: str, lang: Optional[str] = BASELINE_LANG) -> List[str]:
        """Lower-cased terms for *category* in *lang* plus the baseline."""
        with self._lock:
            data = self._load()
            code = normalize_lang(lang)
            terms: List[str] = []
            for source in (code, BASELINE_LANG):
                for term in (data.get(source) or {}).get(category, []):
                    lowered = str(term).lower()
                    if lowered not in terms:
                        terms.append(lowered)
            return terms

    def learn_term(self, lang: Optional[str], category: str, term: str) -> bool:
        """Persist a newly observed term. Returns True if it was added."""
        if not term or not isinstance(term, str) or len(term.strip()) < 3:
            return False
        clean = re.sub(r"[.!?]$", "", term.strip().lower())
        with self._lock:
            data = self._load()
            if any(bad in clean for bad in data.get(BLOCKED_KEY, [])):
                logger.debug("Refusing to learn blocklisted term %r", clean)
                return False
            code = normalize_lang(lang)
            bucket = data.setdefault(code, {}).setdefault(category, [])
            if clean in bucket:
                return False
            bucket.append(clean)
            self._persist(data)
        logger.info("Learned %s term (%s): %r", category, code, clean)
        return True
