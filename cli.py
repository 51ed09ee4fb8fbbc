"""Command-line entry point for the pricing extractor.

Usage:
    python cli.py discover [URL]
    python cli.py extract URL [URL ...] [--workers N] [--no-render]
    python cli.py paste [--monthly FILE] [--yearly FILE] [--website URL]
    python cli.py save OWNER FILE [--source-url URL] [--website URL]
    python cli.py list OWNER
    python cli.py delete OWNER PLAN_ID
    python cli.py settings [--api-key KEY] [--default-model NAME] [--render on|off]

Results are printed as JSON on stdout; logs go to stderr and the log file.
"""
import argparse
import json
import sys
from pathlib import Path

from loguru import logger

from config import APP_VERSION, DEFAULT_WORKERS, MODEL_CHOICES, load_app_settings, save_app_settings
from pricing.browser import close_browser_sync
from pricing.logging_setup import setup_logging
from pricing.pipeline import PricingPipeline


def _print_json(data):
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _read_text(path_str):
    if not path_str:
        return ""
    if path_str == "-":
        return sys.stdin.read()
    return Path(path_str).read_text(encoding="utf-8")


def cmd_discover(args, pipeline):
    result = pipeline.discover_pricing_page(args.url)
    _print_json(result.to_dict())
    return 1 if result.error else 0


def cmd_extract(args, pipeline):
    if len(args.urls) == 1:
        result = pipeline.extract_pricing(args.urls[0])
        _print_json(result.to_dict())
        return 1 if result.error else 0

    results = pipeline.extract_many(args.urls, workers=args.workers)
    _print_json({url: results[url].to_dict() for url in args.urls})
    return 1 if any(r.error for r in results.values()) else 0


def cmd_paste(args, pipeline):
    result = pipeline.extract_from_text(
        monthly_text=_read_text(args.monthly),
        yearly_text=_read_text(args.yearly),
        website_url=args.website,
    )
    _print_json(result.to_dict())
    return 1 if result.error else 0


def cmd_save(args, pipeline):
    data = json.loads(_read_text(args.file))
    # Accept either a bare plan list or a saved extract result
    plans = data.get("plans", []) if isinstance(data, dict) else data
    source_url = args.source_url or (data.get("source_url", "") if isinstance(data, dict) else "")
    count = pipeline.save_plans(args.owner, plans, source_url=source_url, website_url=args.website or "")
    _print_json({"saved_count": count})
    return 0


def cmd_list(args, pipeline):
    plans = pipeline.get_saved_plans(args.owner)
    _print_json({"plans": [p.to_dict() for p in plans], "count": len(plans)})
    return 0


def cmd_delete(args, pipeline):
    deleted = pipeline.delete_plan(args.owner, args.plan_id)
    _print_json({"deleted": deleted})
    return 0 if deleted else 1


def _masked(key):
    if not key:
        return ""
    return key[:7] + "..." + key[-4:] if len(key) > 12 else "***"


def cmd_settings(args, pipeline):
    settings = load_app_settings()
    changed = False
    if args.api_key is not None:
        settings["anthropic_api_key"] = args.api_key.strip()
        changed = True
    if args.default_model:
        settings["extraction_model"] = MODEL_CHOICES[args.default_model]
        changed = True
    if args.render:
        settings["browser_render_enabled"] = args.render == "on"
        changed = True
    if changed:
        save_app_settings(settings)

    shown = dict(settings, anthropic_api_key=_masked(settings.get("anthropic_api_key", "")))
    _print_json(shown)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="pricing", description="Competitive pricing-plan extractor")
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    parser.add_argument("--model", choices=sorted(MODEL_CHOICES), help="Extraction model for this run")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("discover", help="Find the pricing page of a website")
    p.add_argument("url", nargs="?", default="", help="Website URL (default site if omitted)")
    p.set_defaults(func=cmd_discover)

    p = sub.add_parser("extract", help="Extract plans from pricing page URL(s)")
    p.add_argument("urls", nargs="+")
    p.add_argument("--workers", type=int, default=DEFAULT_WORKERS)
    p.add_argument("--no-render", action="store_true", help="Never start a headless browser")
    p.set_defaults(func=cmd_extract)

    p = sub.add_parser("paste", help="Extract plans from copied pricing text")
    p.add_argument("--monthly", help="File with the monthly view text ('-' for stdin)")
    p.add_argument("--yearly", help="File with the yearly view text ('-' for stdin)")
    p.add_argument("--website", help="Website the text was copied from")
    p.set_defaults(func=cmd_paste)

    p = sub.add_parser("save", help="Replace an owner's saved plans with plans from a JSON file")
    p.add_argument("owner")
    p.add_argument("file", help="JSON plan list or extract output ('-' for stdin)")
    p.add_argument("--source-url")
    p.add_argument("--website")
    p.set_defaults(func=cmd_save)

    p = sub.add_parser("list", help="Show an owner's saved plans")
    p.add_argument("owner")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("delete", help="Delete one saved plan")
    p.add_argument("owner")
    p.add_argument("plan_id", type=int)
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("settings", help="Show or update saved settings")
    p.add_argument("--api-key", help="Anthropic API key to store ('' clears it)")
    p.add_argument("--default-model", choices=sorted(MODEL_CHOICES))
    p.add_argument("--render", choices=["on", "off"], help="Allow headless browser rendering")
    p.set_defaults(func=cmd_settings)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose)

    settings = load_app_settings()
    model = MODEL_CHOICES[args.model] if args.model else settings.get("extraction_model")
    pipeline = PricingPipeline(model=model)
    if getattr(args, "no_render", False) or not settings.get("browser_render_enabled", True):
        pipeline.render_enabled = False

    logger.debug("Running {} command", args.command)
    try:
        return args.func(args, pipeline)
    finally:
        close_browser_sync()


if __name__ == "__main__":
    sys.exit(main())
