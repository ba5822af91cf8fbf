"""
Unigram tokenizer compatible with the HuggingFace tokenizer the embedding
model was trained with: BERT-style punctuation normalization, Metaspace
pre-tokenization and greedy longest-prefix matching over a vocabulary trie.
"""

import os
import re
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from config.model_config import MODEL_FILES, TOKENIZER_DEFAULTS
from downloader import read_json
from exceptions import ModelDataCorruptError

logger = logging.getLogger(__name__)

# Punctuation characters to space-pad (matching BertNormalizer)
PUNCTUATION = '!"#$%&\'()*+,-./:;<=>?@[\\]^_`{|}~'

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """
    Lowercase, space-pad every punctuation character and collapse whitespace.

    Args:
        text: Raw input text

    Returns:
        Normalized text
    """
    result = text.lower()
    for p in PUNCTUATION:
        result = result.replace(p, f" {p} ")
    return _WHITESPACE_RE.sub(" ", result).strip()


@dataclass(frozen=True)
class TokenizerConfig:
    """Fixed tokenizer parameters loaded from tokenizer_config.json."""
    max_length: int = TOKENIZER_DEFAULTS["max_length"]
    pad_token_id: int = TOKENIZER_DEFAULTS["pad_token_id"]
    unk_token_id: int = TOKENIZER_DEFAULTS["unk_token_id"]
    metaspace_replacement: str = TOKENIZER_DEFAULTS["metaspace_replacement"]

    @classmethod
    def from_dict(cls, data: Dict) -> "TokenizerConfig":
        """Build a config, falling back to defaults for missing or null keys."""
        values = {}
        for key, default in TOKENIZER_DEFAULTS.items():
            value = data.get(key)
            values[key] = default if value is None else value
        if not isinstance(values["max_length"], int) or values["max_length"] < 1:
            raise ModelDataCorruptError(f"Invalid max_length: {values['max_length']!r}")
        if len(values["metaspace_replacement"]) != 1:
            raise ModelDataCorruptError("metaspace_replacement must be a single character")
        return cls(**values)


class _TrieNode:
    __slots__ = ("children", "token_id")

    def __init__(self):
        self.children: Dict[str, "_TrieNode"] = {}
        self.token_id: Optional[int] = None


class VocabularyTrie:
    """
    Prefix trie over the vocabulary for longest-prefix matching.
    Built once; never mutated afterwards.
    """

    def __init__(self, vocab: Dict[str, int]):
        self._root = _TrieNode()
        self._size = 0
        for token, token_id in vocab.items():
            if not isinstance(token_id, int) or isinstance(token_id, bool) or token_id < 0:
                raise ModelDataCorruptError(f"Invalid id for token {token!r}: {token_id!r}")
            if not token:
                continue
            node = self._root
            for char in token:
                child = node.children.get(char)
                if child is None:
                    child = _TrieNode()
                    node.children[char] = child
                node = child
            node.token_id = token_id
            self._size += 1

    def __len__(self) -> int:
        return self._size

    def longest_match(self, text: str, start: int) -> Tuple[Optional[int], int]:
        """
        Walk the trie from ``start`` as far as the text allows.

        Returns:
            (token_id, length) of the longest terminal prefix, or (None, 0)
        """
        node = self._root
        best_id = None
        best_len = 0
        for i in range(start, len(text)):
            node = node.children.get(text[i])
            if node is None:
                break
            if node.token_id is not None:
                best_id = node.token_id
                best_len = i - start + 1
        return best_id, best_len


class UnigramTokenizer:
    """
    Greedy Unigram tokenizer producing fixed-length ids and attention mask.
    Stateless after construction; safe to share between threads.
    """

    def __init__(self, vocab: Dict[str, int], config: Optional[TokenizerConfig] = None):
        self.config = config or TokenizerConfig()
        self.vocab_size = (max(vocab.values()) + 1) if vocab else 0
        self._trie = VocabularyTrie(vocab)

    @classmethod
    def from_pretrained(cls, model_path: str) -> "UnigramTokenizer":
        """
        Load vocabulary and tokenizer config from a model directory.

        Args:
            model_path: Directory containing vocab.json and tokenizer_config.json

        Returns:
            UnigramTokenizer instance
        """
        vocab = read_json(os.path.join(model_path, MODEL_FILES["vocab"]))
        if not isinstance(vocab, dict):
            raise ModelDataCorruptError("vocab.json must be a JSON object")

        config_data = read_json(os.path.join(model_path, MODEL_FILES["tokenizer_config"]))
        if not isinstance(config_data, dict):
            raise ModelDataCorruptError("tokenizer_config.json must be a JSON object")

        tokenizer = cls(vocab, TokenizerConfig.from_dict(config_data))
        logger.info(
            f"Tokenizer loaded: {len(tokenizer._trie):,} tokens, "
            f"max_length={tokenizer.config.max_length}"
        )
        return tokenizer

    def pre_tokenize(self, normalized: str) -> str:
        """Prefix each word with the metaspace marker and join without separators."""
        marker = self.config.metaspace_replacement
        return "".join(f"{marker}{word}" for word in normalized.split())

    def unigram_tokenize(self, text: str) -> List[int]:
        """
        Greedy longest-prefix tokenization.

        Unmatched characters become one UNK token each, so the scan always
        advances. Empty input yields a single UNK token.
        """
        tokens = []
        pos = 0
        while pos < len(text):
            token_id, length = self._trie.longest_match(text, pos)
            if token_id is None:
                tokens.append(self.config.unk_token_id)
                pos += 1
            else:
                tokens.append(token_id)
                pos += length
        return tokens or [self.config.unk_token_id]

    def pad_or_truncate(self, tokens: List[int]) -> Tuple[List[int], List[int]]:
        """
        Truncate to max_length, then right-pad ids and mask to max_length.

        Returns:
            (token_ids, attention_mask)
        """
        length = self.config.max_length
        tokens = tokens[:length]
        attention_mask = [1] * len(tokens)
        padding = length - len(tokens)
        return (
            tokens + [self.config.pad_token_id] * padding,
            attention_mask + [0] * padding
        )

    def tokenize(self, text: str) -> Tuple[List[int], List[int]]:
        """
        Convert text to fixed-length token ids and attention mask.

        Args:
            text: Canonical request text

        Returns:
            (token_ids, attention_mask), both of length max_length
        """
        normalized = normalize_text(text)
        tokens = self.unigram_tokenize(self.pre_tokenize(normalized))
        return self.pad_or_truncate(tokens)

