"""Constants for convergence-harness."""

# Default configuration file name
CONFIG_FILE = "harness.yaml"

# Log file written by each replica process (inside its home directory)
REPLICA_LOG_FILE = "replica.out"

# Engine bookkeeping inside folder roots, never part of a snapshot
FOLDER_MARKER = ".stfolder"
VERSIONS_DIR = ".stversions"

# REST API
API_KEY_HEADER = "X-API-Key"
DEFAULT_API_KEY = "abc123"
FULL_COMPLETION = 100.0

# Versioning policy kinds accepted by the replica
VERSIONING_TYPES = ("", "simple", "staggered")

# Generator parameters
DEFAULT_NUM_FILES = 100
DEFAULT_FILE_SIZE_EXP = 20
DEFAULT_ITERATIONS = 3
ALTER_NEW_FILES = 25
ALTER_SIZE_EXP = 20
MAX_SIZE_JITTER = 128 * 1024
MAX_AGE_SECONDS = 30 * 86400

# Append marker written at setup and appended to without touching mtime
APPEND_FILE_NAME = "test-appendfile"
APPEND_INITIAL = "hello\n"
APPEND_MORE = "more data\n"

# Environment overrides
ENV_BINARY = "CONVERGENCE_HARNESS_BINARY"
ENV_API_KEY = "CONVERGENCE_HARNESS_API_KEY"

# Version
HARNESS_VERSION = "0.1.0"
