"""Document ingestion entrypoint.

This script extracts text from local files or URLs (txt, md, pdf, docx),
cleans and chunks it, embeds the chunks and writes them to the configured
record store and vector index. Optionally runs a single question against the
freshly loaded material.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from scholar_rag.app.container import build_container
from scholar_rag.common.schemas import DocumentMetadata
from scholar_rag.config import GlobalConfig


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingest documents into the answering workflow stores")

    parser.add_argument(
        "sources",
        nargs="+",
        type=str,
        help="Files or URLs to ingest.",
    )

    parser.add_argument(
        "--config-file",
        "-c",
        required=True,
        type=str,
        help="Path to the YAML configuration file.",
    )

    parser.add_argument(
        "--owner-id",
        "-o",
        required=True,
        type=str,
        help="Id of the uploading user.",
    )

    parser.add_argument("--subject", type=str, default=None, help="Subject tag (optional).")
    parser.add_argument("--grade-level", type=str, default=None, help="Grade tag (optional).")
    parser.add_argument(
        "--public",
        action="store_true",
        help="Make the documents visible to students.",
    )

    parser.add_argument(
        "--qdrant-collection-name",
        "--collection-name",
        required=False,
        type=str,
        default=None,
        help="Override Qdrant collection name from config (optional).",
    )

    parser.add_argument(
        "--embed-concurrency",
        "-w",
        required=False,
        type=int,
        default=None,
        help="Override the number of concurrent embedding requests (optional).",
    )

    parser.add_argument(
        "--query",
        "-q",
        required=False,
        type=str,
        default=None,
        help="Ask one question after ingestion (optional).",
    )

    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level (default: WARNING).",
    )

    return parser.parse_args()


def _override_qdrant_collection_name(cfg: GlobalConfig, cli_value: str | None) -> None:
    if not cli_value:
        return

    vector_store = cfg.raw.get("vector_store")
    if vector_store is None:
        cfg.raw["vector_store"] = {
            "type": "qdrant",
            "collection_name": cli_value,
        }
        return

    if isinstance(vector_store, dict):
        vector_store["collection_name"] = cli_value
        return

    raise TypeError("'vector_store' config must be a mapping to override collection_name.")


def _override_embed_concurrency(cfg: GlobalConfig, cli_value: int | None) -> None:
    if cli_value is None:
        return
    if cli_value < 1:
        raise ValueError("--embed-concurrency must be >= 1 when provided.")
    ingestion_cfg = cfg.raw.get("ingestion")
    if not isinstance(ingestion_cfg, dict):
        ingestion_cfg = {}
        cfg.raw["ingestion"] = ingestion_cfg
    ingestion_cfg["embed_concurrency"] = int(cli_value)


async def run(args: argparse.Namespace) -> int:
    cfg = GlobalConfig.load(args.config_file)
    _override_qdrant_collection_name(cfg, args.qdrant_collection_name)
    _override_embed_concurrency(cfg, args.embed_concurrency)
    container = build_container(cfg)
    service = container.service

    failures = 0
    for source in args.sources:
        meta = DocumentMetadata(
            title=Path(source).stem or source,
            owner_id=args.owner_id,
            subject=args.subject,
            grade_level=args.grade_level,
            is_public=args.public,
        )
        try:
            result = await service.ingest_file(source, meta)
        except Exception as exc:
            failures += 1
            print(f"FAILED {source}: {type(exc).__name__}: {exc}")
            continue
        print(f"Ingested {source}: {result.chunk_count} chunks, {result.text_length} chars ({result.document_id})")

    if args.query:
        response = await service.run_workflow(
            args.query,
            args.owner_id,
            role="teacher",
            subject=args.subject,
            grade_level=args.grade_level,
        )
        print()
        print(response.answer)
        print()
        print(f"Sources: {', '.join(response.sources) or '-'}")
        print(
            f"Confidence: {response.confidence:.2f}  "
            f"Attempts: {response.metadata.get('attempts')}  "
            f"Evaluation: {response.metadata.get('evaluation_score')}"
        )

    print("Ingestion complete!" if not failures else f"Ingestion finished with {failures} failure(s).")
    return 1 if failures else 0


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
