"""Configuration constants.

This module contains values that should NOT be user-configurable: on-disk
names and format versions, and hard caps on query parameters.

For configurable values, see models.py.
"""

# =============================================================================
# Query Limits
# =============================================================================

QUERY_MAX_K = 200
"""Maximum neighbours a single query may request."""

DEFAULT_CONFIDENCE_THRESHOLD = 60.0
"""Confidence threshold (percent) used when nothing is persisted."""

# =============================================================================
# Embedding
# =============================================================================

DEFAULT_FASTEMBED_MODEL = "BAAI/bge-small-en-v1.5"
"""Default fastembed model (384 dimensions)."""

HASHING_MODEL_ID = "hashing-ngram-v1"
"""Model id of the deterministic character n-gram backend."""

# =============================================================================
# On-disk Layout
# =============================================================================

FORMAT_VERSION = 1
"""Manifest format version. Bumped on incompatible layout changes."""

CURRENT_POINTER = "CURRENT"
SETTINGS_FILE = "settings.yaml"
CONFIG_FILE = "config.yaml"
ANALYTICS_FILE = "analytics.jsonl"
LOCK_FILE = "write.lock"
NOTES_FILE = "notes.jsonl"
IGNORE_FILE = ".semignore"
GENERATIONS_DIR = "generations"
STAGING_PREFIX = ".staging-"

MANIFEST_FILE = "manifest.json"
CHUNKS_DB_FILE = "chunks.db"
VECTORS_FILE = "vectors.npz"
GRAPH_FILE = "graph.hnsw"

PAYLOAD_FILES = (CHUNKS_DB_FILE, VECTORS_FILE, GRAPH_FILE)
"""Files of a generation covered by manifest checksums."""

GENERATION_ID_WIDTH = 8
"""Generation ids are zero-padded decimal strings of this width."""

# =============================================================================
# Source Walking
# =============================================================================

DEFAULT_MAX_FILE_BYTES = 1_000_000
"""Files larger than this are not indexed by DirectorySource."""

BINARY_SNIFF_BYTES = 8192
"""Leading bytes inspected for NUL when deciding a file is binary."""
