"""
Retrieval benchmark for a loreforge canon directory.
Runs concurrent hybrid canon queries to measure latency over the in-memory indexes.

Usage:  python retrieval_benchmark.py <canon_dir> [num_queries] [concurrency]
"""
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from loreforge.canon import load_canon
from loreforge.config import LoreforgeConfig
from loreforge.embeddings import build_embeddings, load_index
from loreforge.retrieval import HybridCanonRetriever

QUERIES = [
    "the old keep",
    "who rules the harbor",
    "dragon",
    "river crossing at night",
    "the sunken bell",
    "merchant guild ledger",
    "north gate",
    "ancient treaty",
]


def run_query(retriever: HybridCanonRetriever, query: str) -> dict:
    start = time.perf_counter()
    try:
        snippets = retriever.retrieve_snippets(query)
        latency = (time.perf_counter() - start) * 1000
        return {"success": True, "latency_ms": latency, "snippets": len(snippets)}
    except Exception as e:
        latency = (time.perf_counter() - start) * 1000
        return {"success": False, "latency_ms": latency, "error": str(e)}


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    canon_dir = sys.argv[1]
    num_queries = int(sys.argv[2]) if len(sys.argv) > 2 else 50
    concurrency = int(sys.argv[3]) if len(sys.argv) > 3 else 4

    config = LoreforgeConfig.from_env().with_overrides(canon_path=canon_dir)
    canon_index = load_canon(config.canon_path)
    retriever = HybridCanonRetriever.from_config(
        config,
        canon_index,
        embedding_index=load_index(config.resolved_index_path),
        embeddings=build_embeddings(config),
    )

    print(f"\n{'='*60}")
    print(f"  Loreforge Retrieval Benchmark")
    print(f"  Docs: {len(canon_index)}  |  Queries: {num_queries}  |  Concurrency: {concurrency}")
    print(f"{'='*60}\n")

    results = []
    wall_start = time.perf_counter()
    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        futures = [pool.submit(run_query, retriever, QUERIES[i % len(QUERIES)]) for i in range(num_queries)]
        for f in as_completed(futures):
            results.append(f.result())
    wall_elapsed = time.perf_counter() - wall_start

    successes = [r for r in results if r["success"]]
    latencies = sorted(r["latency_ms"] for r in successes)

    print(f"  Successful:        {len(successes)} / {num_queries}")
    print(f"  Wall time:         {wall_elapsed:.2f} s")
    print(f"  Throughput:        {num_queries / wall_elapsed:.2f} queries/s")
    if latencies:
        print(f"  Avg latency:       {sum(latencies)/len(latencies):.2f} ms")
        print(f"  P50 latency:       {latencies[len(latencies)//2]:.2f} ms")
        print(f"  P95 latency:       {latencies[int(len(latencies)*0.95)]:.2f} ms")
        print(f"  Avg snippets:      {sum(r['snippets'] for r in successes)/len(successes):.1f}")
    print(f"{'='*60}\n")


if __name__ == "__main__":
    main()
