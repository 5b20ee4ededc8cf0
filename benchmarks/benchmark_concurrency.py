"""Benchmark transcription speed across chunk concurrency levels."""

import argparse
import asyncio
import dataclasses
import sys
import time
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent))

from offline_whisper import (
    ModelManager,
    TranscriptionEngine,
    WhisperError,
    load_config,
    setup_logging,
)


async def benchmark_concurrency(
    manager: ModelManager,
    config,
    audio_path: str,
    variant: str,
    max_concurrency: int,
    num_runs: int = 3,
):
    """Benchmark one concurrency level on a real audio file.

    Returns:
        Dictionary of results, or None if every run failed
    """
    print(f"\n{'='*60}")
    print(f"max_concurrency={max_concurrency}, device={config.engine.device}")
    print(f"{'='*60}")

    run_config = dataclasses.replace(
        config,
        engine=dataclasses.replace(config.engine, max_concurrency=max_concurrency),
    )
    engine = TranscriptionEngine(manager, variant, config=run_config)

    # Warm-up loads the model and the TorchScript graphs
    try:
        result = await engine.transcribe(audio_path)
        print(f"Transcription preview: {result.text[:100]}...")
    except WhisperError as e:
        print(f"Warm-up failed: {e}")
        engine.close()
        return None

    run_times = []
    for run in range(num_runs):
        engine.clear_caches()
        start_time = time.perf_counter()
        try:
            result = await engine.transcribe(audio_path)
        except WhisperError as e:
            print(f"  Run {run+1} failed: {e}")
            continue
        elapsed = time.perf_counter() - start_time
        run_times.append(elapsed)
        print(f"  Run {run+1}: {elapsed:.3f}s")

    engine.close()
    if not run_times:
        return None

    avg_time = float(np.mean(run_times))
    return {
        "max_concurrency": max_concurrency,
        "avg_time": avg_time,
        "std_time": float(np.std(run_times)),
        "rtf": avg_time / result.audio_duration if result.audio_duration else 0.0,
        "num_chunks": result.num_chunks,
    }


async def main():
    parser = argparse.ArgumentParser(description="Benchmark chunk concurrency")
    parser.add_argument("audio", help="Path to an audio file (longer than 30s is best)")
    parser.add_argument("--variant", default="base", help="Model variant id")
    parser.add_argument("--levels", type=int, nargs="+", default=[1, 2, 4])
    parser.add_argument("--runs", type=int, default=3)
    parser.add_argument("--config", default=None, help="Path to a TOML config file")
    args = parser.parse_args()

    config = load_config(args.config)
    setup_logging(config.general)
    manager = ModelManager.from_config(config)

    results = []
    for level in args.levels:
        outcome = await benchmark_concurrency(
            manager, config, args.audio, args.variant, level, args.runs
        )
        if outcome:
            results.append(outcome)
    await manager.aclose()

    if not results:
        print("\nAll benchmarks failed")
        return

    print(f"\n{'='*60}")
    print("Summary")
    print(f"{'='*60}")
    print(f"{'Concurrency':>12} {'Avg time':>12} {'RTF':>10} {'Speedup':>10}")
    baseline = results[0]["avg_time"]
    for r in results:
        speedup = baseline / r["avg_time"] if r["avg_time"] else 0.0
        print(
            f"{r['max_concurrency']:>12} {r['avg_time']:>10.3f}s "
            f"{r['rtf']:>10.4f} {speedup:>9.2f}x"
        )
    print(f"Chunks per run: {results[0]['num_chunks']}")


if __name__ == "__main__":
    asyncio.run(main())
