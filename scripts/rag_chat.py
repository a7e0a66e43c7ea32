"""CLI for RAG-powered chat with the indexed document collection."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from generation import LLMClientError, ProviderError, create_llm_client, get_available_providers
from generation.rag_chain import RAGChain, RAGConfig
from streaming import CancellationToken, StreamError, ndjson


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Query the RAG system with LLM-powered responses.",
    )
    parser.add_argument(
        "--vectorstore-dir",
        default="data/vectorstore",
        help="Directory where Chroma persistence files live.",
    )
    parser.add_argument(
        "--collection-name",
        default="pilot-docs",
        help="Chroma collection to query.",
    )
    parser.add_argument(
        "--embedding-model",
        default="sentence-transformers/all-MiniLM-L6-v2",
        help="SentenceTransformer model used to embed query text.",
    )
    parser.add_argument(
        "--question",
        "-q",
        help="Single question to ask (omit for interactive mode).",
    )
    parser.add_argument(
        "--k",
        type=int,
        default=5,
        help="Top-K chunks to retrieve for context.",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=1000,
        help="Maximum tokens in LLM response.",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=0.7,
        help="LLM temperature (0.0-1.0).",
    )
    parser.add_argument(
        "--show-sources",
        action="store_true",
        help="Show retrieved source chunks.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output response as JSON (single question mode only).",
    )
    parser.add_argument(
        "--stream",
        action="store_true",
        help="Stream the answer token by token (single question mode only).",
    )
    parser.add_argument(
        "--ndjson",
        action="store_true",
        help="Write the streamed answer as newline-delimited JSON to stdout.",
    )
    parser.add_argument(
        "--defer-sources",
        action="store_true",
        help="With --stream/--ndjson, send only cited sources, after the answer.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Stop streaming after this many seconds.",
    )
    parser.add_argument(
        "--interactive",
        "-i",
        action="store_true",
        help="Run in interactive chat mode.",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to .env file with API credentials.",
    )
    parser.add_argument(
        "--provider",
        "-p",
        choices=get_available_providers(),
        help=f"LLM provider to use. Options: {', '.join(get_available_providers())}. "
             "Overrides LLM_PROVIDER env var.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args()


async def stream_answer(rag_chain: RAGChain, args: argparse.Namespace) -> int:
    """Stream one answer, either as raw ND-JSON or as readable text."""
    cancel_token = CancellationToken()
    if args.timeout:
        cancel_token.cancel_after(args.timeout)

    lines = rag_chain.stream_query(
        args.question,
        k=args.k,
        max_tokens=args.max_tokens,
        temperature=args.temperature,
        defer_sources=args.defer_sources,
        cancel_token=cancel_token,
    )

    if args.ndjson:
        async for line in lines:
            sys.stdout.write(line.decode("utf-8"))
            sys.stdout.flush()
        return 0

    # Decode our own wire format the way a downstream client would
    sources = []
    print(f"Question: {args.question}\n")
    print("Answer: ", end="", flush=True)
    async for envelope in ndjson.decode(lines):
        if envelope["type"] == "chunk":
            print(envelope["value"], end="", flush=True)
        else:
            sources.append(envelope["value"])
    print("\n")

    if cancel_token.cancelled:
        print(f"[warn] {cancel_token.reason}", file=sys.stderr)

    if args.show_sources and sources:
        print("--- Sources ---")
        for source in sources:
            page = source.get("page", "")
            page_str = f" (page {page})" if page else ""
            print(f"  [{source['index']}] {source['source']}{page_str}")

    return 0


def main() -> int:
    args = parse_args()

    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s")

    # Load environment variables
    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()  # Try default locations

    # Validate vectorstore exists
    vectorstore_path = Path(args.vectorstore_dir)
    if not vectorstore_path.exists():
        print(f"[error] Vector store path {vectorstore_path} not found.", file=sys.stderr)
        return 1

    # Initialize LLM client using factory
    provider = args.provider  # None means use env var or default
    try:
        llm_client = create_llm_client(provider)
        provider_name = provider or os.getenv("LLM_PROVIDER", "openai")
        print(f"[info] Using LLM provider: {provider_name}", file=sys.stderr)
    except ProviderError as e:
        print(f"[error] {e}", file=sys.stderr)
        print(f"\nAvailable providers: {', '.join(get_available_providers())}", file=sys.stderr)
        print("\nSet LLM_PROVIDER env var or use --provider flag.", file=sys.stderr)
        return 1

    # Initialize RAG chain
    rag_config = RAGConfig(
        vectorstore_dir=vectorstore_path,
        collection_name=args.collection_name,
        embedding_model=args.embedding_model,
        top_k=args.k,
        max_tokens=args.max_tokens,
        temperature=args.temperature,
    )
    rag_chain = RAGChain(llm_client, rag_config)

    # Determine mode
    if args.interactive or (not args.question):
        # Interactive mode
        rag_chain.chat_loop(k=args.k, show_sources=args.show_sources)
        return 0

    if args.stream or args.ndjson:
        try:
            return asyncio.run(stream_answer(rag_chain, args))
        except (LLMClientError, StreamError) as e:
            print(f"\n[error] {e}", file=sys.stderr)
            return 1

    # Single question mode
    try:
        response = rag_chain.query(
            args.question,
            k=args.k,
            max_tokens=args.max_tokens,
            temperature=args.temperature,
        )
    except Exception as e:
        print(f"[error] {e}", file=sys.stderr)
        return 1

    if args.json:
        output = {
            "question": args.question,
            "answer": response.answer,
            "sources": [
                {
                    "text": chunk[:200] + "..." if len(chunk) > 200 else chunk,
                    "metadata": metadata,
                    "distance": distance,
                }
                for chunk, metadata, distance in zip(
                    response.retrieved_chunks,
                    response.metadatas,
                    response.distances,
                )
            ],
        }
        json.dump(output, sys.stdout, indent=2, ensure_ascii=False)
        sys.stdout.write("\n")
    else:
        print(f"Question: {args.question}\n")
        print(f"Answer: {response.answer}\n")

        if args.show_sources:
            print("--- Sources ---")
            for i, (chunk, metadata, distance) in enumerate(
                zip(response.retrieved_chunks, response.metadatas, response.distances),
                start=1,
            ):
                source = metadata.get("relative_path", "unknown")
                page = metadata.get("page", "")
                page_str = f" (page {page})" if page else ""
                snippet = chunk[:100].replace("\n", " ") + "..."
                print(f"  [{i}] {source}{page_str} (dist: {distance:.4f})")
                print(f"      {snippet}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
