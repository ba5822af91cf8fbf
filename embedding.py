"""
Embedding inference for canonical request text.
Static token-embedding model (mean pooled over the attention mask) run with torch.
"""

import os
import time
import logging
from typing import Optional, Dict, Any, List

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from config.model_config import MODEL_FILES, MODEL_DEFAULTS
from downloader import read_json
from exceptions import DeadlineExceededError, InferenceError, ModelDataCorruptError, ModelDataMissingError
from tokenizer import UnigramTokenizer

logger = logging.getLogger(__name__)


class EmbeddingProvider:
    """
    Contract for the embedding computation: ``(token_ids, attention_mask) -> vector``.

    Implementations must raise InferenceError instead of returning a
    placeholder vector when the computation fails.
    """

    embedding_dim: int

    def infer(self, token_ids: List[int], attention_mask: List[int]) -> np.ndarray:
        raise NotImplementedError

    def __call__(self, token_ids: List[int], attention_mask: List[int]) -> np.ndarray:
        return self.infer(token_ids, attention_mask)


class StaticEmbedding(nn.Module):
    """
    Static token embeddings with masked mean pooling.
    """

    def __init__(self, vocab_size: int, embedding_dim: int = 256, normalize: bool = True):
        super().__init__()
        self.vocab_size = vocab_size
        self.embedding_dim = embedding_dim
        self.normalize = normalize
        self.embedding = nn.Embedding(vocab_size, embedding_dim)

    def forward(self,
                token_ids: torch.Tensor,
                attention_mask: torch.Tensor) -> torch.Tensor:
        """
        Args:
            token_ids: [batch_size, seq_len]
            attention_mask: [batch_size, seq_len], 1 for real tokens

        Returns:
            Embeddings [batch_size, embedding_dim]
        """
        x = self.embedding(token_ids)
        mask = attention_mask.unsqueeze(-1).to(x.dtype)
        summed = (x * mask).sum(dim=1)
        counts = mask.sum(dim=1).clamp(min=1.0)
        pooled = summed / counts
        if self.normalize:
            pooled = F.normalize(pooled, p=2, dim=-1)
        return pooled


class TorchEmbeddingProvider(EmbeddingProvider):
    """Runs a StaticEmbedding module on CPU or GPU."""

    def __init__(self, model: StaticEmbedding, device: str = "cpu"):
        self.device = torch.device(device)
        self.model = model.to(self.device)
        self.model.eval()
        self.embedding_dim = model.embedding_dim

    @classmethod
    def from_checkpoint(cls,
                        weights_path: str,
                        embedding_dim: int,
                        normalize: bool = True,
                        device: str = "cpu") -> "TorchEmbeddingProvider":
        """
        Load embedding weights saved with ``torch.save``.

        Accepts a bare state dict or one wrapped in ``model_state_dict``;
        the embedding table may be stored as ``embedding.weight`` or
        ``embeddings``.
        """
        if not os.path.exists(weights_path):
            raise ModelDataMissingError(
                f"Embedding weights not found: {weights_path}",
                missing_files=[os.path.basename(weights_path)]
            )

        try:
            checkpoint = torch.load(weights_path, map_location="cpu", weights_only=True)
        except Exception as e:
            raise ModelDataCorruptError(f"Could not load embedding weights: {e}") from e

        if isinstance(checkpoint, dict) and 'model_state_dict' in checkpoint:
            state_dict = checkpoint['model_state_dict']
        else:
            state_dict = checkpoint

        if isinstance(state_dict, torch.Tensor):
            weight = state_dict
        elif isinstance(state_dict, dict) and 'embedding.weight' in state_dict:
            weight = state_dict['embedding.weight']
        elif isinstance(state_dict, dict) and 'embeddings' in state_dict:
            weight = state_dict['embeddings']
        else:
            raise ModelDataCorruptError("Checkpoint has no embedding table")

        if weight.dim() != 2:
            raise ModelDataCorruptError(f"Embedding table must be 2-D, got {tuple(weight.shape)}")
        if weight.shape[1] != embedding_dim:
            raise ModelDataCorruptError(
                f"Embedding table dim {weight.shape[1]} != configured embedding_dim {embedding_dim}"
            )

        model = StaticEmbedding(weight.shape[0], embedding_dim, normalize=normalize)
        model.embedding.weight.data.copy_(weight.to(torch.float32))
        logger.info(f"Embedding weights loaded from {weights_path}: {tuple(weight.shape)}")
        return cls(model, device=device)

    @torch.no_grad()
    def infer(self, token_ids: List[int], attention_mask: List[int]) -> np.ndarray:
        try:
            ids = torch.tensor([token_ids], dtype=torch.long, device=self.device)
            mask = torch.tensor([attention_mask], dtype=torch.long, device=self.device)
            output = self.model(ids, mask)
        except (IndexError, RuntimeError, ValueError, TypeError) as e:
            raise InferenceError(f"Embedding inference failed: {e}") from e
        return output[0].detach().cpu().numpy().astype(np.float32)


def check_deadline(deadline: Optional[float], stage: str = "inference") -> None:
    """
    Raise DeadlineExceededError once ``time.monotonic()`` reaches ``deadline``.
    A deadline of None never expires.
    """
    if deadline is not None and time.monotonic() >= deadline:
        raise DeadlineExceededError(f"Deadline passed before {stage}")


class EmbeddingModel:
    """
    Tokenizer plus embedding provider: canonical text in, embedding vector out.
    """

    def __init__(self,
                 tokenizer: UnigramTokenizer,
                 provider: EmbeddingProvider,
                 embedding_dim: Optional[int] = None):
        self.tokenizer = tokenizer
        self.provider = provider
        self.embedding_dim = embedding_dim or provider.embedding_dim

    @classmethod
    def from_pretrained(cls, model_path: str, device: str = "cpu") -> "EmbeddingModel":
        """
        Load tokenizer, model config and weights from a model directory.

        Args:
            model_path: Directory with vocab, configs and embedding weights
            device: Torch device for inference

        Returns:
            EmbeddingModel instance
        """
        tokenizer = UnigramTokenizer.from_pretrained(model_path)
        config = load_model_config(model_path)
        provider = TorchEmbeddingProvider.from_checkpoint(
            os.path.join(model_path, MODEL_FILES["weights"]),
            embedding_dim=config["embedding_dim"],
            normalize=config["normalize"],
            device=device
        )
        if tokenizer.vocab_size > provider.model.vocab_size:
            raise ModelDataCorruptError(
                f"Vocabulary ids reach {tokenizer.vocab_size - 1} but the embedding "
                f"table has {provider.model.vocab_size} rows"
            )
        return cls(tokenizer, provider, embedding_dim=config["embedding_dim"])

    def embed(self, text: str, deadline: Optional[float] = None) -> np.ndarray:
        """
        Compute the embedding for canonical request text.

        Args:
            text: Canonical request text
            deadline: ``time.monotonic()`` value after which the provider is not called

        Raises:
            InferenceError: Provider failed or returned an unusable vector
            DeadlineExceededError: The deadline passed before inference
        """
        token_ids, attention_mask = self.tokenizer.tokenize(text)
        check_deadline(deadline)
        return self.run_inference(token_ids, attention_mask)

    def run_inference(self, token_ids: List[int], attention_mask: List[int]) -> np.ndarray:
        """Call the provider and validate its output."""
        try:
            vector = self.provider(token_ids, attention_mask)
        except InferenceError:
            raise
        except Exception as e:
            raise InferenceError(f"Embedding provider failed: {e}") from e

        if vector is None:
            raise InferenceError("Embedding provider returned no output")

        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.embedding_dim:
            raise InferenceError(
                f"Embedding dimension {vector.shape[0]} != expected {self.embedding_dim}"
            )
        if not np.all(np.isfinite(vector)):
            raise InferenceError("Embedding contains non-finite values")
        return vector

    def get_info(self) -> Dict[str, Any]:
        config = self.tokenizer.config
        return {
            "embedding_dim": self.embedding_dim,
            "max_length": config.max_length,
            "vocab_size": self.tokenizer.vocab_size,
            "provider": type(self.provider).__name__
        }


def load_model_config(model_path: str) -> Dict[str, Any]:
    """Read config.json, falling back to defaults for a missing file or keys."""
    config_path = os.path.join(model_path, MODEL_FILES["model_config"])
    if not os.path.exists(config_path):
        return dict(MODEL_DEFAULTS)
    data = read_json(config_path)
    if not isinstance(data, dict):
        raise ModelDataCorruptError("config.json must be a JSON object")
    config = dict(MODEL_DEFAULTS)
    config.update({k: v for k, v in data.items() if v is not None})
    if not isinstance(config["embedding_dim"], int) or config["embedding_dim"] < 1:
        raise ModelDataCorruptError(f"Invalid embedding_dim: {config['embedding_dim']!r}")
    return config
