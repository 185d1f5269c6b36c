#!/usr/bin/env python3
"""
Recall - Main Entry Point
Operator console for the memory extraction layer

Usage:
    python main.py                          # Show configuration and provider status
    python main.py --check                  # Validate settings; exit 1 if unusable
    python main.py --extract request.json   # Run one extraction from a JSON file
    python main.py --extract - --timeout 90 # Read the request from stdin
    python main.py --metrics                # Print metrics after the run
"""

import sys
import json
import argparse
from pathlib import Path

# Ensure we can import from project root
sys.path.insert(0, str(Path(__file__).parent))

import config
from core.logger import (
    setup_logging,
    log_startup_banner,
    log_section,
    log_subsection,
    log_success,
    log_warning,
    log_error,
    log_config
)
from core.metrics import get_metrics_sink
from concurrency.cancellation import CancellationToken
from llm.settings import load_settings, validate_settings, LLMConfigError
from llm.types import ExtractionRequest
from memory.extractor import init_memory_extractor, get_memory_extractor


def print_configuration(settings) -> None:
    """Print configuration summary."""
    log_section("Configuration", "📡")
    log_subsection(f"Diagnostic Log: {config.DIAGNOSTIC_LOG_PATH}")
    log_subsection(f"Schema: {config.SCHEMA_VERSION}")

    log_section("Provider Routing", "🤖")
    log_subsection(f"Primary: {settings.primary or '(unset)'}")
    log_subsection(f"Fallback: {settings.fallback or 'DISABLED'}")
    for name, provider in settings.providers.items():
        log_config(f"{name}.model", provider.model or "(unset)", indent=1)
        log_config(f"{name}.base_url", provider.base_url or "(default)", indent=1)
        log_config(f"{name}.api_key", "set" if provider.api_key else "missing", indent=1)

    log_section("Resilience", "🛡️")
    log_subsection(f"Max Attempts: {settings.max_retries}")
    log_subsection(f"Backoff: {config.RETRY_INITIAL_DELAY}s x{config.RETRY_BACKOFF_MULTIPLIER} "
                   f"(cap {config.RETRY_MAX_DELAY}s, jitter ±{config.RETRY_JITTER}s)")
    log_subsection(f"Call Timeout: {settings.call_timeout}s "
                   f"(streaming: {'ENABLED' if settings.streaming else 'DISABLED'})")
    log_subsection(f"Circuit Breaker: >{settings.circuit_threshold:.0%} failures over "
                   f"{config.CIRCUIT_WINDOW_SIZE} calls (min {settings.circuit_min_calls}), "
                   f"cooldown {settings.circuit_cooldown}s")
    limits = settings.rate_limits
    log_subsection(f"Rate Limit: burst {limits.burst_capacity}, {limits.sustained_rate}/s, "
                   f"{limits.max_per_window} per {limits.window_seconds:.0f}s")

    log_section("Budget", "💰")
    if settings.daily_budget_usd > 0:
        log_subsection(f"Daily Limit: ${settings.daily_budget_usd:.2f} (UTC day)")
        log_subsection(f"Warnings at: {', '.join(f'{t}%' for t in config.BUDGET_WARNING_THRESHOLDS)}")
    else:
        log_subsection("Daily Limit: DISABLED (spend is still tracked)")


def check_llm_providers(settings) -> bool:
    """
    Validate settings and display provider status.

    Returns:
        True if extraction can run with these settings
    """
    log_section("Settings Validation", "🔍")
    errors = validate_settings(settings)
    if errors:
        for error in errors:
            log_subsection(f"❌ {error}")
        return False
    log_subsection("✅ Settings valid")

    log_section("LLM Providers", "🤖")
    try:
        extractor = init_memory_extractor(settings)
    except LLMConfigError as e:
        for error in e.errors:
            log_subsection(f"❌ {error}")
        return False
    status = extractor.check_providers()

    healthy = True
    for name, (ok, message) in status.items():
        role = "Primary" if name == settings.primary else "Fallback"
        if ok:
            log_subsection(f"{role} ({name}): ✅ {message}")
        else:
            log_subsection(f"{role} ({name}): ❌ {message}")
            if name == settings.primary:
                healthy = False
    return healthy


def load_request(source: str) -> ExtractionRequest:
    """Read an ExtractionRequest from a JSON file path, or '-' for stdin."""
    if source == "-":
        data = json.load(sys.stdin)
    else:
        with open(source, "r", encoding="utf-8") as f:
            data = json.load(f)
    return ExtractionRequest.from_dict(data)


def run_extraction(source: str, timeout: float) -> int:
    """Run one extraction and print the result as JSON."""
    try:
        request = load_request(source)
    except (OSError, ValueError) as e:
        log_error(f"Could not read request from {source}: {e}")
        return 2

    if not request.messages:
        log_error("Request has no messages")
        return 2

    extractor = get_memory_extractor()
    cancel = CancellationToken.with_timeout(timeout) if timeout > 0 else None
    outcome = extractor.extract(request, cancel=cancel)

    log_section("Extraction", "🧠")
    log_subsection(f"Outcome: {outcome.label}")
    log_subsection(f"Attempts: {len(outcome.attempts)} (cost ${outcome.total_cost_usd:.5f})")
    for attempt in outcome.attempts:
        detail = attempt.error_kind.value if attempt.error_kind else attempt.outcome
        flags = "".join([" corrective" if attempt.corrective else "", " fallback" if attempt.fallback else ""])
        log_subsection(f"{attempt.provider}/{attempt.model}: {detail} in {attempt.latency_ms:.0f}ms{flags}", indent=2)

    if not outcome.ok:
        log_error(f"Extraction failed: {outcome.label} {outcome.message}".rstrip())
        return 1

    log_success(f"{len(outcome.result.memories)} memories via {outcome.provider}")
    print(json.dumps(outcome.result.to_wire(), indent=2, ensure_ascii=False))
    return 0


def main() -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parser = argparse.ArgumentParser(
        description="Recall - Resilient LLM memory extraction",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Validate settings and provider configuration, then exit"
    )
    parser.add_argument(
        "--extract", "-e",
        metavar="FILE",
        help="Run one extraction from a JSON request file ('-' for stdin)"
    )
    parser.add_argument(
        "--timeout", "-t",
        type=float,
        default=120.0,
        help="Overall extraction deadline in seconds (0 disables)"
    )
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Print Prometheus metrics after the run"
    )
    args = parser.parse_args()

    setup_logging(
        config.DIAGNOSTIC_LOG_PATH,
        level=config.LOG_LEVEL,
        log_to_file=config.LOG_TO_FILE,
        log_to_console=config.LOG_TO_CONSOLE
    )
    log_startup_banner(config.VERSION, config.PROJECT_NAME)

    settings = load_settings()
    print_configuration(settings)

    try:
        healthy = check_llm_providers(settings)
        if not healthy:
            log_warning("Extraction unavailable until the problems above are fixed")
            return 1
        if args.check or not args.extract:
            log_success("Ready")
            return 0

        code = run_extraction(args.extract, args.timeout)

    except LLMConfigError as e:
        log_error(f"Invalid settings: {e}")
        return 1
    except KeyboardInterrupt:
        log_warning("Interrupted")
        return 130

    if args.metrics and config.METRICS_ENABLED:
        print(get_metrics_sink().render().decode("utf-8"))
    return code


if __name__ == "__main__":
    sys.exit(main())
