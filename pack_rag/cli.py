"""
CLI for the pack RAG engine.

Answers one question against a local content pack, with trace and dry-run modes.
"""
import sys
import json
import asyncio
import argparse
import logging
from .config import get_settings
from .errors import RagError
from .pack import load_pack
from .pack_reader import LocalPackReader
from .pipeline import AskPipeline
from .cache import get_cache
from .embedders import get_embedder

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)

DEFAULT_DIAGNOSTICS_PATH = "/tmp/pack_rag_last.json"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Pack RAG: grounded answers over a rules + cards content pack",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Ask against the pack in ./content_pack
  python -m pack_rag.cli "Can a creature with haste attack the turn it comes in?"

  # Another pack, local models
  python -m pack_rag.cli "What does ward do?" --pack-root packs/core --backend local

  # Trace mode (show fused hits)
  python -m pack_rag.cli "How does trample work?" --trace

  # Dry run (retrieve and print the prompt, no completion)
  python -m pack_rag.cli "What is 702.19c?" --dry-run
        """
    )

    parser.add_argument(
        "question",
        help="Question to answer"
    )

    parser.add_argument(
        "--pack-root",
        help="Content pack directory (default from config)"
    )

    parser.add_argument(
        "--backend",
        choices=["remote", "local"],
        help="Model backend (default from config)"
    )

    parser.add_argument(
        "--trace",
        action="store_true",
        help="Show fused hits with their scores"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Dry run: show context and prompt without calling the model for an answer"
    )

    parser.add_argument(
        "--flag-unknown",
        action="store_true",
        help="Report unmatched words as unknown card mentions"
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Verbose logging"
    )

    parser.add_argument(
        "--output",
        "-o",
        help=f"Output file for diagnostics JSON (default: {DEFAULT_DIAGNOSTICS_PATH})"
    )
    return parser


def _print_section(title: str):
    print("=" * 80)
    print(title)
    print("=" * 80)


def _print_hits(hits):
    _print_section(f"TOP {len(hits)} FUSED HITS")
    for i, hit in enumerate(hits, 1):
        print(f"[{i}] {hit.doc_id}")
        print(f"    distance: {hit.score:.4f}  fused: {hit.norm_score:.4f}")
    print()


def _save_diagnostics(path: str, diagnostics: dict):
    try:
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(diagnostics, f, indent=2)
        logger.info(f"Diagnostics saved to {path}")
    except OSError as e:
        logger.warning(f"Failed to save diagnostics: {e}")


def main(argv=None):
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    # Set log level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Load settings
    try:
        settings = get_settings()
    except ValueError as e:
        logger.error(f"Failed to load settings: {e}")
        sys.exit(1)

    overrides = {}
    if args.pack_root:
        overrides["PACK_ROOT"] = args.pack_root
    if args.backend:
        overrides["MODEL_BACKEND"] = args.backend
    if args.flag_unknown:
        overrides["FLAG_UNKNOWN_WORDS"] = True
    if overrides:
        settings = settings.model_copy(update=overrides)

    output_path = args.output or DEFAULT_DIAGNOSTICS_PATH
    reader = LocalPackReader(settings.PACK_ROOT)

    try:
        pack_state, settings = asyncio.run(load_pack(reader, settings))
    except RagError as e:
        logger.error(f"Failed to load pack from {settings.PACK_ROOT}: {e}")
        _save_diagnostics(output_path, {"question": args.question, "error": e.to_dict()})
        sys.exit(1)

    # Print configuration
    logger.info("=" * 80)
    logger.info("Pack RAG")
    logger.info("=" * 80)
    logger.info(f"Question: {args.question}")
    logger.info(f"Pack: {settings.PACK_ROOT}")
    logger.info(f"Backend: {settings.MODEL_BACKEND}")
    logger.info(f"Top-k: rules={settings.TOP_K_RULES} cards={settings.TOP_K_CARDS} merge={settings.TOP_K_MERGE}")
    logger.info(f"Context budget: {settings.CONTEXT_TOKEN_BUDGET} tokens")
    if args.dry_run:
        logger.info("DRY RUN MODE: Will not generate an answer")
    logger.info("=" * 80)
    logger.info("")

    with get_embedder(settings, get_cache(settings)) as backend:
        try:
            pipeline = AskPipeline(reader, pack_state, backend, settings)
            if args.dry_run:
                retrieval = pipeline.run_retrieval(args.question)
                result = None
            else:
                result = pipeline.run(args.question)
        except RagError as e:
            logger.error(f"Pipeline failed: {e}")
            _save_diagnostics(output_path, {"question": args.question, "error": e.to_dict()})
            sys.exit(1)
        cache_stats = backend.cache.stats() if backend.cache is not None else {}

    if result is None:
        if args.trace:
            _print_hits(retrieval.fused)
        _print_section("CONTEXT")
        print(retrieval.context.context_text)
        print()
        _print_section("PROMPT")
        print(retrieval.context.prompt)
        print()
        _save_diagnostics(output_path, {
            "question": args.question,
            "dry_run": True,
            "hits": [h.model_dump() for h in retrieval.fused],
            "doc_ids": retrieval.context.doc_ids,
            "timing_ms": retrieval.timing_ms,
            "cache_stats": cache_stats,
        })
        print("=" * 80)
        return

    # Print results
    print("\n" + "=" * 80)
    print("ANSWER")
    print("=" * 80)
    print(result.nudged)
    print()

    if args.trace:
        _print_hits(result.hits)

    _print_section("VALIDATION")
    stats = result.summary.stats
    print(f"Card hit rate:  {stats.card_hit_rate:.2f}")
    print(f"Rule hit rate:  {stats.rule_hit_rate:.2f}")
    print(f"Unknown cards:  {stats.unknown_card_count}")
    print(f"Invalid rules:  {stats.invalid_rule_count}")
    for rule in result.summary.rules:
        if rule.status == "invalid":
            print(f"    invalid rule: {rule.raw}")
    for card in result.summary.cards:
        if card.status == "unknown":
            print(f"    unknown card: {card.raw}")
    print()

    # Print timing summary
    _print_section("TIMING SUMMARY")
    timing = result.timing_ms
    print(f"Embed:      {timing.get('embed_ms', 0):>6} ms")
    print(f"Search:     {timing.get('search_ms', 0):>6} ms")
    print(f"Chunks:     {timing.get('chunks_ms', 0):>6} ms")
    print(f"Answer:     {timing.get('answer_ms', 0):>6} ms")
    print(f"Validate:   {timing.get('validate_ms', 0):>6} ms")
    print(f"{'─' * 30}")
    print(f"Total:      {timing.get('total_ms', 0):>6} ms")
    print()

    _save_diagnostics(output_path, {
        "question": args.question,
        "hits": [h.model_dump() for h in result.hits],
        "summary": result.summary.model_dump(),
        "timing_ms": result.timing_ms,
        "cache_stats": cache_stats,
        "answer_changed": result.nudged != result.raw,
        "answer_length": len(result.nudged),
    })

    print("=" * 80)
    logger.info("Pipeline complete!")


if __name__ == "__main__":
    main()
