#!/usr/bin/env python
"""Validate DocChat setup - check dependencies, configuration and services."""
import shutil
import sys
import asyncio
from pathlib import Path

# Color codes for terminal output
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
RESET = "\033[0m"

def print_success(msg):
    print(f"{GREEN}✓{RESET} {msg}")

def print_error(msg):
    print(f"{RED}✗{RESET} {msg}")

def print_info(msg):
    print(f"{BLUE}ℹ{RESET} {msg}")

def print_warning(msg):
    print(f"{YELLOW}⚠{RESET} {msg}")

def print_section(title):
    print(f"\n{BLUE}{'='*60}{RESET}")
    print(f"{BLUE}{title:^60}{RESET}")
    print(f"{BLUE}{'='*60}{RESET}\n")


DEPENDENCIES = [
    ("quart", "Quart web framework"),
    ("quart_cors", "CORS for Quart"),
    ("hypercorn", "Hypercorn ASGI server"),
    ("ollama", "Ollama Python client"),
    ("httpx", "HTTP client"),
    ("faiss", "FAISS vector store"),
    ("numpy", "Numeric arrays"),
    ("langchain_core", "LangChain documents"),
    ("langchain_text_splitters", "Text splitters"),
    ("pypdf", "PDF text extraction"),
    ("pdf2image", "PDF rasterising"),
    ("pytesseract", "Tesseract OCR bindings"),
    ("PIL", "Pillow imaging"),
    ("bs4", "HTML parsing"),
    ("jwt", "JSON Web Tokens"),
    ("bcrypt", "Password hashing"),
    ("pydantic", "Data validation"),
    ("dotenv", "Environment files"),
    ("structlog", "Structured logging"),
    ("pytest", "Testing framework"),
]

# (binary, what it is for, install hint)
OCR_BINARIES = [
    ("tesseract", "OCR for images and scanned PDFs", "apt install tesseract-ocr  |  brew install tesseract"),
    ("pdftoppm", "rasterising scanned PDFs (Poppler)", "apt install poppler-utils  |  brew install poppler"),
]


class Report:
    """Collects failures and warnings while printing as it goes."""

    def __init__(self):
        self.errors = []
        self.warnings = []

    def ok(self, msg):
        print_success(msg)

    def fail(self, msg, reason=None, hint=None):
        print_error(msg)
        if hint:
            print_info(f"  {hint}")
        self.errors.append(reason or msg)

    def warn(self, msg, reason=None):
        print_warning(msg)
        self.warnings.append(reason or msg)


def check_python(report: Report):
    print_section("1. Python Environment")
    print_info(f"Python version: {sys.version.split()[0]}")
    if sys.version_info >= (3, 10):
        report.ok("Python version >= 3.10")
    else:
        report.fail("Python version < 3.10 (required)", "Python version too old")

    if sys.prefix != getattr(sys, "base_prefix", sys.prefix):
        report.ok("Running in virtual environment")
    else:
        report.warn("Not running in virtual environment (recommended)", "Not in venv")


def check_imports(report: Report):
    print_section("2. Core Dependencies")
    for module_name, description in DEPENDENCIES:
        try:
            __import__(module_name)
        except ImportError as e:
            report.fail(f"{description:30} ({module_name}) - {e}", f"Missing: {module_name}")
        else:
            report.ok(f"{description:30} ({module_name})")


def check_config(report: Report):
    """Import docchat.config and check the directories it points at."""
    print_section("3. Configuration")
    sys.path.insert(0, str(Path(__file__).parent.parent))
    try:
        from docchat import config
    except Exception as e:
        report.fail(f"Failed to load config: {e}", "Config loading failed")
        return None

    report.ok("Config loaded successfully")
    for label, value in (
        ("Chat model", config.CHAT_MODEL),
        ("Embedding model", config.EMBEDDING_MODEL),
        ("Ollama URL", config.OLLAMA_BASE_URL),
        ("File chunks", f"{config.PDF_CHUNK_SIZE}/{config.PDF_CHUNK_OVERLAP} chars"),
        ("Web chunks", f"{config.WEB_CHUNK_SIZE}/{config.WEB_CHUNK_OVERLAP} chars"),
    ):
        print_info(f"  {label}: {value}")

    for label, path in (("Data directory", config.DATA_DIR), ("Upload directory", config.UPLOAD_DIR)):
        if path.exists():
            report.ok(f"{label} exists: {path}")
        else:
            report.fail(f"{label} missing: {path}", f"{label} missing")

    if config.JWT_SECRET == "change-me-in-production":
        report.warn("JWT_SECRET is the default value; set it in .env", "Default JWT secret")
    return config


async def check_ollama(report: Report, config):
    """Both models must be pulled and the embedding endpoint must answer."""
    print_section("4. Ollama Service")
    from docchat.llm_client import OllamaClient

    try:
        models = set(await OllamaClient().list_models())
    except Exception as e:
        report.fail(f"Cannot reach Ollama at {config.OLLAMA_BASE_URL}: {e}", "Ollama not running",
                    hint="Make sure Ollama is running: ollama serve")
        return

    report.ok(f"Ollama service running ({len(models)} models installed)")
    for label, model in (("Chat", config.CHAT_MODEL), ("Embedding", config.EMBEDDING_MODEL)):
        if model in models:
            report.ok(f"{label} model available: {model}")
        else:
            report.fail(f"{label} model missing: {model}", f"Missing {label.lower()} model: {model}",
                        hint=f"Run: ollama pull {model}")

    print_section("5. Embedding Test")
    try:
        import ollama
        client = ollama.Client(host=config.OLLAMA_BASE_URL)
        response = await asyncio.to_thread(client.embeddings, model=config.EMBEDDING_MODEL, prompt="test")
        dimension = len(response["embedding"])
    except Exception as e:
        report.fail(f"Embedding request failed: {e}", "Embedding API issue")
    else:
        report.ok(f"Embedding API working (dimension: {dimension})")


def check_ocr(report: Report, config):
    print_section("6. OCR Toolchain")
    for binary, purpose, install in OCR_BINARIES:
        found = shutil.which(binary)
        if found:
            report.ok(f"{binary} found: {found}")
        else:
            report.fail(f"{binary} missing (needed for {purpose})", f"{binary} missing",
                        hint=f"Install: {install}")

    if not shutil.which("tesseract"):
        return
    import pytesseract
    try:
        languages = pytesseract.get_languages(config="")
    except Exception as e:
        report.warn(f"Could not list Tesseract languages: {e}", "Tesseract languages unknown")
        return
    missing = [lang for lang in config.OCR_LANGUAGE.split("+") if lang not in languages]
    if missing:
        report.warn(f"OCR language(s) not installed: {', '.join(missing)}",
                    f"Missing OCR language: {config.OCR_LANGUAGE}")
    else:
        report.ok(f"OCR language available: {config.OCR_LANGUAGE}")


def print_summary(report: Report):
    print_section("Summary")
    if report.errors:
        print_error(f"Found {len(report.errors)} error(s):")
        for i, error in enumerate(report.errors, 1):
            print(f"  {i}. {error}")
    else:
        print_success("All checks passed! ✨")
        print_info("\n  Start the server with: ./scripts/dev.sh")

    if report.warnings:
        print_warning(f"\nFound {len(report.warnings)} warning(s):")
        for i, warning in enumerate(report.warnings, 1):
            print(f"  {i}. {warning}")
    print()


async def main() -> Report:
    print_section("DocChat - Setup Validation")
    report = Report()

    check_python(report)
    check_imports(report)
    config = check_config(report)
    if config is not None:
        await check_ollama(report, config)
        check_ocr(report, config)

    print_summary(report)
    return report


if __name__ == "__main__":
    report = asyncio.run(main())
    sys.exit(1 if report.errors else 0)
