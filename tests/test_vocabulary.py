"""Tests for the per-language UI vocabulary."""
from __future__ import annotations

import json

from chatrelay.core.vocabulary import BASE_VOCABULARY, Vocabulary, normalize_lang


class TestNormalizeLang:
    def test_codes(self):
        assert normalize_lang("pt-BR") == "pt"
        assert normalize_lang("EN_us") == "en"
        assert normalize_lang(None) == "en"
        assert normalize_lang("") == "en"


class TestTerms:
    def test_baseline_is_always_included(self):
        terms = Vocabulary().get_terms("error_indicators", "pt")
        assert "erro de rede" in terms
        assert "network error" in terms
        assert terms.index("erro de rede") < terms.index("network error")

    def test_unknown_language_falls_back(self):
        assert Vocabulary().get_terms("close_actions", "xx") == BASE_VOCABULARY["en"]["close_actions"]

    def test_unknown_category(self):
        assert Vocabulary().get_terms("nothing", "en") == []


class TestLearning:
    def test_learn_and_persist(self, tmp_path):
        path = str(tmp_path / "vocabulary.json")
        vocab = Vocabulary(path)
        assert vocab.learn_term("pt-BR", "close_actions", "Fechar Agora!") is True
        assert vocab.learn_term("pt", "close_actions", "fechar agora") is False
        with open(path, encoding="utf-8") as handle:
            assert "fechar agora" in json.load(handle)["pt"]["close_actions"]
        assert "fechar agora" in Vocabulary(path).get_terms("close_actions", "pt")

    def test_rejects_short_and_blocked_terms(self):
        vocab = Vocabulary()
        assert vocab.learn_term("en", "close_actions", "ok") is False
        assert vocab.learn_term("en", "close_actions", "Search chats") is False

    def test_corrupt_file_restores_baseline(self, tmp_path):
        path = tmp_path / "vocabulary.json"
        path.write_text("{broken", encoding="utf-8")
        vocab = Vocabulary(str(path))
        assert "network error" in vocab.get_terms("error_indicators")
        assert json.loads(path.read_text(encoding="utf-8"))["en"]

    def test_baseline_written_on_first_use(self, tmp_path):
        path = tmp_path / "vocabulary.json"
        Vocabulary(str(path)).get_terms("error_indicators")
        assert path.exists()
