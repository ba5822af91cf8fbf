"""
Model-specific configuration for the request classifier.
"""

# Files expected inside the model directory
MODEL_FILES = {
    "weights": "embedding_model.pth",
    "vocab": "vocab.json",
    "tokenizer_config": "tokenizer_config.json",
    "model_config": "config.json",
    "vectors": "vectors.bin",
    "labels": "labels.json"
}

REQUIRED_FILES = [
    MODEL_FILES["weights"],
    MODEL_FILES["vocab"],
    MODEL_FILES["tokenizer_config"],
    MODEL_FILES["model_config"],
    MODEL_FILES["vectors"],
    MODEL_FILES["labels"]
]

# Tokenizer defaults (overridden by tokenizer_config.json)
TOKENIZER_DEFAULTS = {
    "max_length": 128,
    "pad_token_id": 0,
    "unk_token_id": 1,
    "metaspace_replacement": "▁"
}

# Embedding model defaults (overridden by config.json)
MODEL_DEFAULTS = {
    "embedding_dim": 256,
    "normalize": True
}

# Label vocabulary
CLEAN_LABEL = "clean"

ATTACK_LABELS = [
    "sqli",
    "xss",
    "path_traversal",
    "command_injection",
    "credential_stuffing",
    "spam_bot",
    "scanner",
    "ssrf",
    "xxe",
    "nosql_injection",
    "template_injection",
    "log4shell",
    "open_redirect",
    "ldap_injection"
]

SEVERITIES = ["low", "medium", "high", "critical"]

# KNN search
NEAR_ZERO_NORM = 1e-8
DEFAULT_K = 5

# Request canonicalizer buckets
BODY_SIZE_BUCKETS = [
    (100, "tiny"),
    (500, "small"),
    (2000, "medium")
]

ENTROPY_BUCKETS = [
    (2.5, "low"),
    (4.0, "normal"),
    (5.5, "high")
]

SPECIAL_DENSITY_BUCKETS = [
    (0.05, "low"),
    (0.15, "normal"),
    (0.3, "high")
]

MAX_DECODE_ROUNDS = 3
PAYLOAD_MAX_CHARS = 500

# Bulk insert size when seeding the pattern database
SEED_BATCH_SIZE = 500
