import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI

from adflow.analyzer import LLMMediaAnalyzer
from adflow.assets import LocalAssetResolver, LocalAssetStore
from adflow.config import PipelineSettings, load_policy, load_settings
from adflow.context import PipelineContext
from adflow.errors import AdflowError
from adflow.messaging import LLMComplianceReviewer, LLMCopyGenerator, LLMDomainReviewer, LLMReviser
from adflow.models import load_rows
from adflow.orchestrator import BatchOrchestrator
from adflow.publishing import JsonRecordSync, LocalAdsPublisher


class _NoopRecordSync:
    async def update(self, record_ref, final_copy) -> bool:
        return True


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Turn a batch of creative assets into reviewed, paused ads."
    )
    parser.add_argument(
        "--rows",
        type=Path,
        required=True,
        help="Path to the JSON file with the batch rows.",
    )
    parser.add_argument(
        "--input-assets",
        type=Path,
        required=True,
        help="Path to the folder containing the creative assets.",
    )
    parser.add_argument(
        "--output-root",
        type=Path,
        default=Path("outputs"),
        help="Root folder for staged assets and published ads.",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Max rows in flight at once (default: ADFLOW_MAX_CONCURRENCY or 3).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Analyze, write and review copy, but do not publish or sync.",
    )
    parser.add_argument(
        "--policy",
        type=Path,
        default=None,
        help="Policy JSON (banned phrases, approved claims, cost ceiling).",
    )
    parser.add_argument(
        "--sync-rows",
        action="store_true",
        help="Write final copy back into the rows file.",
    )
    parser.add_argument(
        "--include-jobs",
        action="store_true",
        help="Include full job snapshots in the printed result.",
    )
    args = parser.parse_args()
    if args.concurrency is not None and args.concurrency < 1:
        parser.error("--concurrency must be >= 1")
    return args


def build_context(args: argparse.Namespace, settings: PipelineSettings) -> PipelineContext:
    policy = load_policy(args.policy or settings.policy_path)

    if not settings.openai_api_key:
        raise AdflowError("OPENAI_API_KEY is not set. A model is required for analysis and copy.")

    llm = ChatOpenAI(
        model=settings.model,
        temperature=0.7,
        api_key=settings.openai_api_key,
        timeout=settings.request_timeout,
        # Retries are owned by the pipeline's retry policy.
        max_retries=0,
    )

    record_sync = JsonRecordSync(args.rows) if args.sync_rows else _NoopRecordSync()
    return PipelineContext(
        asset_resolver=LocalAssetResolver(args.input_assets),
        asset_store=LocalAssetStore(args.output_root / "staged"),
        media_analyzer=LLMMediaAnalyzer(llm, policy),
        copy_generator=LLMCopyGenerator(llm, policy),
        compliance_reviewer=LLMComplianceReviewer(llm, policy),
        domain_reviewer=LLMDomainReviewer(llm, policy),
        reviser=LLMReviser(llm, policy),
        ads_publisher=LocalAdsPublisher(args.output_root, policy),
        record_sync=record_sync,
        settings=settings,
        policy=policy,
    )


def main() -> int:
    # Load environment variables from a local .env file if present
    # (e.g. OPENAI_API_KEY=sk-...).
    load_dotenv()

    args = parse_args()
    try:
        settings = load_settings()
    except AdflowError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        context = build_context(args, settings)
        rows = load_rows(args.rows)
    except (AdflowError, OSError, ValueError) as exc:
        logging.getLogger("adflow").error("%s", exc)
        return 2

    orchestrator = BatchOrchestrator(context)
    result = asyncio.run(
        orchestrator.submit_batch(rows, concurrency=args.concurrency, dry_run=args.dry_run)
    )

    print(json.dumps(result.to_dict(include_jobs=args.include_jobs), indent=2, ensure_ascii=False))
    return 1 if result.summary.failed else 0


if __name__ == "__main__":
    sys.exit(main())
