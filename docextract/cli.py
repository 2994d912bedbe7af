"""CLI entrypoint for the extraction engine."""

import argparse
import asyncio
import json
import logging
import os
import re
import sys
import warnings
from pathlib import Path

import yaml

from docextract.core.config import (
    API_KEY_ENV_VAR,
    LLM_PROVIDER,
    SMART_MODEL,
    ContextWindowConfig,
    SearchModes,
)

# Suppress LiteLLM's direct prints (must be before import)
os.environ["LITELLM_LOG"] = "ERROR"

warnings.filterwarnings("ignore", message="Pydantic serializer warnings")
warnings.filterwarnings("ignore", message="PydanticSerializationUnexpectedValue")
warnings.filterwarnings("ignore", category=UserWarning, module="pydantic")
warnings.filterwarnings("ignore", message="Unclosed client session")
warnings.filterwarnings("ignore", category=ResourceWarning)

for logger_name in ["httpx", "httpcore", "litellm", "LiteLLM", "LiteLLM Router", "aiohttp", "asyncio"]:
    logging.getLogger(logger_name).setLevel(logging.ERROR)

from dotenv import load_dotenv  # noqa: E402 - must be after logging config

load_dotenv()

import litellm  # noqa: E402

litellm.suppress_debug_info = True

PAGE_SUFFIXES = (".txt", ".md")


def _natural_key(path: Path) -> list:
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", path.name)]


def load_pages(source: str | Path) -> list[str]:
    """Page texts from a directory of .txt/.md files or a JSON file.

    A JSON file holds either a list of page texts or a list of
    {"page": n, "text": "..."} objects.

    Raises:
        ValueError: Nothing usable was found.
    """
    path = Path(source)
    if path.is_dir():
        files = sorted((p for p in path.iterdir() if p.suffix.lower() in PAGE_SUFFIXES), key=_natural_key)
        pages = [p.read_text(encoding="utf-8") for p in files]
    else:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError(f"{path} must contain a JSON list of pages")
        if all(isinstance(entry, dict) for entry in data):
            ordered = sorted(data, key=lambda entry: entry.get("page", 0))
            pages = [str(entry.get("text") or "") for entry in ordered]
        else:
            pages = [str(entry) for entry in data]

    if not pages:
        raise ValueError(f"No pages found in {path}")
    return pages


def load_settings(config_path: str | None) -> dict:
    """Run settings from a YAML file (keys are ExtractionConfig field names)."""
    if not config_path:
        return {}
    with open(config_path, encoding="utf-8") as f:
        settings = yaml.safe_load(f) or {}
    if not isinstance(settings, dict):
        raise ValueError(f"{config_path} must contain a mapping of settings")
    return settings


async def extract(
    schema_path: str,
    pages_source: str,
    output: str | None = None,
    settings: dict | None = None,
    log_dir: str | None = None,
) -> dict | None:
    """Run one extraction and write the rolled-up output.

    Returns:
        The output dict, or None on failure.
    """
    # Import here so the logging setup above runs first
    from docextract.orchestrator import Orchestrator
    from docextract.phases.phase_base import ExtractionConfig

    schema_file = Path(schema_path)
    if not schema_file.exists():
        print(f"Error: File not found: {schema_file}")
        return None

    if not os.environ.get(API_KEY_ENV_VAR):
        print(f"Error: {API_KEY_ENV_VAR} not set")
        if LLM_PROVIDER == "azure":
            print("For Azure, set: AZURE_API_KEY, AZURE_API_BASE, AZURE_API_VERSION")
        else:
            print("Set it in .env or export OPENROUTER_API_KEY=...")
        return None

    settings = settings or {}
    config = ExtractionConfig.from_mapping(settings)
    schema = json.loads(schema_file.read_text(encoding="utf-8"))
    pages = load_pages(pages_source)
    name = schema.get("title") or schema_file.stem

    print(f"\n{'='*50}")
    print(f"Extracting: {name} ({len(pages)} pages)")
    print(f"{'='*50}")
    print(f"  Provider: {LLM_PROVIDER}")
    print(f"  Planning model: {config.planning_model.replace('openrouter/', '').replace('azure/', '')}")
    print(f"  Extraction model: {config.extraction_model.replace('openrouter/', '').replace('azure/', '')}")
    print(f"  Search mode: {config.global_search_mode}")
    print(f"  Concurrency: {config.max_concurrent}")
    if config.uses_context_window:
        print(f"  Context pages: {config.context_before} before, {config.context_after} after")
    print()

    try:
        orchestrator = Orchestrator(schema=schema, pages=pages, name=name, config=config, log_dir=log_dir)
        result = await orchestrator.run()

        output_file = Path(output) if output else Path("outputs") / f"{schema_file.stem}.json"
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with open(output_file, "w", encoding="utf-8") as f:
            json.dump(result, f, indent=2, ensure_ascii=False, default=str)
        print(f"\n[OUTPUT] {output_file}")

        cost_tracker = orchestrator.context.cost_tracker
        if cost_tracker.call_count > 0:
            print(f"\n{cost_tracker.summary()}")

        if orchestrator.get_errors().error_count:
            print(f"\n[WARNING] {orchestrator.get_errors().error_count} work item error(s); output may be partial")
        return result

    except Exception as e:
        print(f"\n[ERROR] Extraction failed: {e}")
        if settings.get("verbose"):
            import traceback
            traceback.print_exc()
        return None


def main():
    parser = argparse.ArgumentParser(
        description="Schema-driven hierarchical document extraction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  docextract schema.json pages/
  docextract schema.json pages.json -o out/result.json --search-mode skim_only
  docextract schema.json pages/ --config run.yaml -v
        """,
    )
    parser.add_argument("schema", help="Path to the JSON schema file")
    parser.add_argument("pages", help="Directory of page text files, or a JSON file of pages")
    parser.add_argument("-o", "--output", default=None, help="Output JSON file (default: outputs/<schema>.json)")
    parser.add_argument("-c", "--concurrent", type=int, default=None, help="Max concurrent work items (default: 5)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output with DEBUG level logging")
    parser.add_argument(
        "--smart-model",
        type=str,
        default=None,
        help=f"Model for planning and duplicate resolution. Default: {SMART_MODEL}",
    )
    parser.add_argument(
        "--search-mode",
        choices=SearchModes.GLOBAL_MODES,
        default=None,
        help="Global search mode (default: intelligent, each group uses its planned mode)",
    )
    parser.add_argument(
        "--context-before",
        type=int,
        default=None,
        help=f"Context pages before each target page (default: {ContextWindowConfig.CONTEXT_BEFORE})",
    )
    parser.add_argument(
        "--context-after",
        type=int,
        default=None,
        help=f"Context pages after each target page (default: {ContextWindowConfig.CONTEXT_AFTER})",
    )
    parser.add_argument("--config", default=None, help="YAML file of run settings; CLI flags override it")
    parser.add_argument("--log-dir", default=None, help="Directory for log files")

    args = parser.parse_args()

    settings = load_settings(args.config)
    if args.concurrent is not None:
        settings["max_concurrent"] = args.concurrent
    if args.verbose:
        settings["verbose"] = True
    if args.smart_model:
        settings["smart_model"] = args.smart_model
        settings["planning_model"] = args.smart_model
        settings["deduplication_model"] = args.smart_model
    if args.search_mode:
        settings["global_search_mode"] = args.search_mode
    if args.context_before is not None:
        settings["context_before"] = args.context_before
    if args.context_after is not None:
        settings["context_after"] = args.context_after

    result = asyncio.run(extract(
        schema_path=args.schema,
        pages_source=args.pages,
        output=args.output,
        settings=settings,
        log_dir=args.log_dir,
    ))

    sys.exit(0 if result else 1)


if __name__ == "__main__":
    main()
