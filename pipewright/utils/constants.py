"""Centralized constants for pipewright.

Single source of truth for state directories, file names and the
built-in variables every run exposes to its stages.
"""

# ============================================================================
# STATE DIRECTORIES
# ============================================================================

# Primary state directory (relative to the project root)
STATE_DIR_NAME = ".pipewright"

# Log files
ERROR_LOG_NAME = "error.log"
PIPELINE_LOG_NAME = "pipeline.log"

# Per-build output
RUNS_DIR_NAME = "runs"
ARTIFACTS_DIR_NAME = "artifacts"
RUN_REPORT_NAME = "run_report.json"
BUILD_NUMBER_FILE = "build_number"

# Default pipeline description looked up in the project root
DEFAULT_PIPELINE_FILE = "pipewright.yml"

# ============================================================================
# RUN VARIABLES
# ============================================================================

# Variables injected into every stage environment and usable in ${VAR}
BUILTIN_VARIABLES = frozenset(
    {
        "BRANCH_NAME",
        "BUILD_ID",
        "BUILD_NUMBER",
        "GIT_COMMIT",
        "JOB_NAME",
    }
)

# ============================================================================
# ENVIRONMENT VARIABLES
# ============================================================================

ENV_PREFIX = "PIPEWRIGHT"
ENV_LOG_LEVEL = "PIPEWRIGHT_LOG_LEVEL"
ENV_LOG_JSON = "PIPEWRIGHT_LOG_JSON"
ENV_LOG_FILE = "PIPEWRIGHT_LOG_FILE"
ENV_REQUEST_ID = "PIPEWRIGHT_REQUEST_ID"

# CI variables consulted when resolving the run context, in priority order
BRANCH_ENV_VARS = ("BRANCH_NAME", "GIT_BRANCH", "CI_COMMIT_REF_NAME", "GITHUB_REF_NAME")
COMMIT_ENV_VARS = ("GIT_COMMIT", "CI_COMMIT_SHA", "GITHUB_SHA")
BUILD_NUMBER_ENV_VARS = ("BUILD_NUMBER", "CI_PIPELINE_IID", "GITHUB_RUN_NUMBER")
