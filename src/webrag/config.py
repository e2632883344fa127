# /webrag/config.py
"""
Centralized configuration for the web-document QA service.
Includes model names, chunking parameters, request deadlines, cache sizing,
credential preflight and hardware detection.
"""
import functools
import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)

# ==============================================================================
# GPU DETECTION & SETUP
# ==============================================================================
def _load_torch():
    try:
        import torch  # Imported lazily; sentence-transformers pulls it in on first embedding use.
        return torch
    except ImportError:
        return None


@functools.cache
def detect_gpu_setup():
    """Detects and prints GPU information on first access only."""
    torch = _load_torch()
    if torch is not None and torch.cuda.is_available():
        device_name = torch.cuda.get_device_name(0)
        memory_gb = torch.cuda.get_device_properties(0).total_memory / (1024**3)
        console.print(Panel(
            f"[bold green]GPU Detected![/bold green]\n"
            f"Device: {device_name}\n"
            f"Memory: {memory_gb:.1f} GB",
            title="Embedding Device",
            border_style="green"
        ))
        return {'device': 'cuda', 'name': device_name}
    else:
        console.print("[yellow]No GPU detected. Embeddings will run on CPU.[/yellow]")
        return {'device': 'cpu', 'name': 'cpu'}


@functools.cache
def get_model_kwargs() -> dict[str, str]:
    return {'device': detect_gpu_setup()['device']}


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Deployment Mode ---
APP_ENV = os.getenv("APP_ENV", "development").strip().lower()
IS_PRODUCTION = APP_ENV == "production"

# --- Model Names ---
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai").strip().lower()   # "openai" or "groq"
_DEFAULT_LLM_MODELS = {
    "openai": "gpt-4.1",
    "groq": "llama-3.3-70b-versatile",
}
LLM_MODEL_NAME = os.getenv("LLM_MODEL_NAME", _DEFAULT_LLM_MODELS.get(LLM_PROVIDER, "gpt-4.1"))
LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.0)
SAMPLE_QUESTION_TEMPERATURE = _env_float("SAMPLE_QUESTION_TEMPERATURE", 0.7)
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "sentence-transformers/all-MiniLM-L6-v2")

# --- Chunking Configuration ---
CHUNK_SIZE = _env_int("CHUNK_SIZE", 500, minimum=64)
CHUNK_OVERLAP = _env_int("CHUNK_OVERLAP", 50, minimum=0)
if CHUNK_OVERLAP >= CHUNK_SIZE:
    CHUNK_OVERLAP = max(0, CHUNK_SIZE // 10)

# --- Retrieval / Grading ---
RETRIEVAL_K = 10
SAMPLE_QUESTIONS_K = 5
GRADE_DOC_MAX_CHARS = 1000
GRADE_FALLBACK_KEEP = 3
HISTORY_TURNS_FOR_CONTEXT = 6
MAX_SOURCE_URLS = 3
FETCH_TIMEOUT_S = _env_float("FETCH_TIMEOUT_S", 30.0, minimum=1.0)

# --- Request Deadlines (seconds) ---
COLD_BUILD_TIMEOUT_S = _env_float("COLD_BUILD_TIMEOUT_S", 180.0, minimum=0.01)
COLD_PIPELINE_TIMEOUT_S = _env_float("COLD_PIPELINE_TIMEOUT_S", 60.0, minimum=0.01)
# Warm path: short on hosted free tiers, generous for local development.
WARM_TIMEOUT_S = _env_float("WARM_TIMEOUT_S", 25.0 if IS_PRODUCTION else 120.0, minimum=0.01)
# A timed-out request stops waiting; by default the underlying work keeps running
# so a slow cold build still lands in the cache for the next request.
CANCEL_BUILD_ON_TIMEOUT = _env_bool("CANCEL_BUILD_ON_TIMEOUT", False)
CANCEL_PIPELINE_ON_TIMEOUT = _env_bool("CANCEL_PIPELINE_ON_TIMEOUT", False)

# --- Index Cache ---
INDEX_CACHE_MAX_ENTRIES = _env_int("INDEX_CACHE_MAX_ENTRIES", 32, minimum=0)  # 0 = unbounded
INDEX_BUILD_MAX_WORKERS = _env_int("INDEX_BUILD_MAX_WORKERS", 2, minimum=1)

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 3000, minimum=1)

# --- Path Configuration ---
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
LOG_DIR = Path(os.getenv("LOG_DIR", str(_BASE_DIR / "logs")))
LOG_PATH = Path(os.getenv("LOG_PATH", str(LOG_DIR / "webrag.log")))


@dataclass(frozen=True)
class RequestTimeouts:
    """Deadlines applied by the chat handler, split by cold/warm cache state."""

    cold_build_s: float = COLD_BUILD_TIMEOUT_S
    cold_pipeline_s: float = COLD_PIPELINE_TIMEOUT_S
    warm_s: float = WARM_TIMEOUT_S
    cancel_build_on_timeout: bool = CANCEL_BUILD_ON_TIMEOUT
    cancel_pipeline_on_timeout: bool = CANCEL_PIPELINE_ON_TIMEOUT

    @classmethod
    def from_config(cls) -> "RequestTimeouts":
        return cls()

    def build_deadline(self, cold: bool) -> float:
        return self.cold_build_s if cold else self.warm_s

    def pipeline_deadline(self, cold: bool) -> float:
        return self.cold_pipeline_s if cold else self.warm_s


def required_api_key_env(provider: str | None = None) -> str:
    mode = str(provider or LLM_PROVIDER).strip().lower()
    return "GROQ_API_KEY" if mode == "groq" else "OPENAI_API_KEY"


def check_credentials(provider: str | None = None) -> tuple[bool, list[str]]:
    """
    Strict credential preflight for the configured LLM provider.
    Returns (ok, error_messages).
    """
    errors: list[str] = []
    mode = str(provider or LLM_PROVIDER).strip().lower()
    if mode not in _DEFAULT_LLM_MODELS:
        errors.append(f"Unknown LLM_PROVIDER '{mode}'. Expected one of: {', '.join(sorted(_DEFAULT_LLM_MODELS))}.")
        return False, errors

    key_name = required_api_key_env(mode)
    if not os.getenv(key_name, "").strip():
        errors.append(f"{key_name} is not set. The {mode} provider requires an API key.")
    return len(errors) == 0, errors
