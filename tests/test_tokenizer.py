"""
Unit tests for the Unigram tokenizer.
Tests normalization, trie matching, Metaspace pre-tokenization and padding.
"""

import pytest
import os
import sys
import json

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tokenizer import normalize_text, TokenizerConfig, VocabularyTrie, UnigramTokenizer
from exceptions import ModelDataCorruptError, ModelDataMissingError


class TestNormalizer:
    """Tests for text normalization."""

    def test_lowercases(self):
        assert normalize_text("SELECT From") == "select from"

    def test_pads_punctuation(self):
        assert normalize_text("a=b") == "a = b"
        assert normalize_text("METHOD:POST") == "method : post"

    def test_adjacent_punctuation_padded_individually(self):
        assert normalize_text("'--") == "' - -"
        assert normalize_text("../") == ". . /"

    def test_collapses_and_trims_whitespace(self):
        assert normalize_text("  a \t\n b  ") == "a b"

    def test_empty(self):
        assert normalize_text("") == ""
        assert normalize_text("   ") == ""

    def test_non_punctuation_unchanged(self):
        assert normalize_text("héllo wörld") == "héllo wörld"


class TestVocabularyTrie:
    """Tests for longest-prefix matching."""

    @pytest.fixture
    def trie(self):
        return VocabularyTrie({"a": 1, "ab": 2, "abcd": 3, "b": 4})

    def test_longest_match_prefers_longest(self, trie):
        assert trie.longest_match("abcd", 0) == (3, 4)

    def test_longest_match_falls_back_to_shorter_terminal(self, trie):
        # "abc" is not terminal; the walk stops at "abce" and keeps "ab"
        assert trie.longest_match("abce", 0) == (2, 2)

    def test_longest_match_from_offset(self, trie):
        assert trie.longest_match("xab", 1) == (2, 2)

    def test_no_match(self, trie):
        assert trie.longest_match("zzz", 0) == (None, 0)

    def test_size_skips_empty_token(self):
        trie = VocabularyTrie({"": 0, "a": 1})
        assert len(trie) == 1

    def test_rejects_negative_id(self):
        with pytest.raises(ModelDataCorruptError):
            VocabularyTrie({"a": -1})

    def test_rejects_non_integer_id(self):
        with pytest.raises(ModelDataCorruptError):
            VocabularyTrie({"a": "1"})


class TestTokenizerConfig:
    """Tests for tokenizer configuration."""

    def test_defaults(self):
        config = TokenizerConfig.from_dict({})
        assert config.max_length == 128
        assert config.pad_token_id == 0
        assert config.unk_token_id == 1
        assert config.metaspace_replacement == "▁"

    def test_null_values_use_defaults(self):
        config = TokenizerConfig.from_dict({"max_length": None, "unk_token_id": 7})
        assert config.max_length == 128
        assert config.unk_token_id == 7

    def test_invalid_max_length(self):
        with pytest.raises(ModelDataCorruptError):
            TokenizerConfig.from_dict({"max_length": 0})

    def test_invalid_marker(self):
        with pytest.raises(ModelDataCorruptError):
            TokenizerConfig.from_dict({"metaspace_replacement": "__"})


class TestUnigramTokenizer:
    """Tests for full tokenization."""

    @pytest.fixture
    def tokenizer(self):
        vocab = {"[pad]": 0, "[unk]": 1, "▁a": 2, "▁ab": 3, "c": 4, "▁": 5, "=": 6}
        return UnigramTokenizer(vocab, TokenizerConfig(max_length=8))

    def test_pre_tokenize(self, tokenizer):
        assert tokenizer.pre_tokenize("ab c") == "▁ab▁c"

    def test_greedy_longest_prefix(self, tokenizer):
        # ▁ab matches before ▁a; "c" is a token after the metaspace marker
        assert tokenizer.unigram_tokenize("▁abc") == [3, 4]

    def test_unknown_characters_advance_by_one(self, tokenizer):
        assert tokenizer.unigram_tokenize("▁xy") == [5, 1, 1]

    def test_empty_text_yields_single_unk(self, tokenizer):
        ids, mask = tokenizer.tokenize("")
        assert ids == [1, 0, 0, 0, 0, 0, 0, 0]
        assert mask == [1, 0, 0, 0, 0, 0, 0, 0]

    def test_tokenize_pads_to_max_length(self, tokenizer):
        ids, mask = tokenizer.tokenize("AB c")
        assert ids == [3, 5, 4, 0, 0, 0, 0, 0]
        assert mask == [1, 1, 1, 0, 0, 0, 0, 0]

    def test_tokenize_truncates(self, tokenizer):
        ids, mask = tokenizer.tokenize("a " * 20)
        assert len(ids) == 8
        assert len(mask) == 8
        assert mask == [1] * 8
        assert ids == [2] * 8

    def test_real_prefix_length(self, tokenizer):
        for text in ["", "a", "a=c", "ab ab ab ab", "zzzzzzzzzzzz"]:
            raw = tokenizer.unigram_tokenize(tokenizer.pre_tokenize(normalize_text(text)))
            ids, mask = tokenizer.tokenize(text)
            assert len(ids) == len(mask) == 8
            assert sum(mask) == min(len(raw), 8)

    def test_tokenize_is_deterministic(self, tokenizer):
        assert tokenizer.tokenize("a=ab c") == tokenizer.tokenize("a=ab c")

    def test_vocab_size(self, tokenizer):
        assert tokenizer.vocab_size == 7


class TestTokenizerLoading:
    """Tests for loading from a model directory."""

    def test_from_pretrained(self, model_dir):
        tokenizer = UnigramTokenizer.from_pretrained(model_dir)
        assert tokenizer.config.max_length == 16
        ids, mask = tokenizer.tokenize("METHOD:POST")
        # ▁method ▁: ▁post, where ":" is unknown after its marker
        assert ids[:4] == [3, 2, 1, 4]
        assert sum(mask) == 4

    def test_missing_vocab(self, model_dir):
        os.remove(os.path.join(model_dir, "vocab.json"))
        with pytest.raises(ModelDataMissingError) as exc_info:
            UnigramTokenizer.from_pretrained(model_dir)
        assert exc_info.value.missing_files == ["vocab.json"]

    def test_corrupt_vocab(self, model_dir):
        with open(os.path.join(model_dir, "vocab.json"), "w") as f:
            f.write("{not json")
        with pytest.raises(ModelDataCorruptError):
            UnigramTokenizer.from_pretrained(model_dir)

    def test_vocab_must_be_object(self, model_dir):
        with open(os.path.join(model_dir, "vocab.json"), "w") as f:
            json.dump(["a", "b"], f)
        with pytest.raises(ModelDataCorruptError):
            UnigramTokenizer.from_pretrained(model_dir)
