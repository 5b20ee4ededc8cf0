"""Basic usage example for offline-whisper.

This example demonstrates:
1. Simple transcription of an audio file
2. Managing the model cache
3. Batch transcription with per-file status
4. Handling offline errors
"""

import asyncio

from offline_whisper import (
    ModelManager,
    ModelUnavailableOfflineError,
    TranscriptionEngine,
    TranscriptionOptions,
    WhisperError,
    load_config,
    setup_logging,
)


async def main():
    config = load_config()
    setup_logging(config.general)
    manager = ModelManager.from_config(config)

    # =========================================================================
    # Example 1: Basic Transcription
    # =========================================================================
    print("=" * 70)
    print("Example 1: Basic Transcription")
    print("=" * 70)

    # - variant: model size ("tiny", "base", "small", "medium", "large-v3", ...)
    # - config.engine.max_concurrency bounds the chunks decoded at once
    engine = TranscriptionEngine(manager, "base", config=config)

    audio_path = "audio.wav"  # Your audio file here
    try:
        result = await engine.transcribe(
            audio_path,
            TranscriptionOptions(word_timestamps=True),
            on_progress=lambda p: print(f"\rProgress: {p:6.1%}", end=""),
        )
        print()
        print(f"\nLanguage: {result.language}")
        print(f"Audio duration: {result.audio_duration:.2f}s")
        print(f"Processing time: {result.processing_time:.2f}s")
        print(f"Processed in {result.num_chunks} chunk(s)")
        print()
        print("Transcription:")
        print("-" * 70)
        for segment in result.segments:
            print(f"[{segment.start:6.2f}s - {segment.end:6.2f}s] {segment.text}")
    except WhisperError as e:
        print(f"\nError during transcription: {e}")
        print(f"Suggestion: {e.suggestion}")

    # =========================================================================
    # Example 2: Model Cache
    # =========================================================================
    print("\n" + "=" * 70)
    print("Example 2: Model Cache")
    print("=" * 70)

    for variant in manager.get_supported_models():
        cached = variant in manager.get_available_models()
        marker = "cached" if cached else "-"
        print(f"{variant.id:16s} {variant.size_bytes / 1024**2:8.0f}MB  {marker}")

    for entry in manager.cache_entries():
        print(f"{entry.variant}: used {entry.usage_count} time(s)")

    # =========================================================================
    # Example 3: Batch Transcription
    # =========================================================================
    print("\n" + "=" * 70)
    print("Example 3: Batch Transcription")
    print("=" * 70)

    files = ["meeting_part1.wav", "meeting_part2.wav", "missing.wav"]
    results = await engine.transcribe_batch(
        files,
        max_concurrent_files=2,
        on_status=lambda i, path, status: print(f"  {path.name}: {status.value}"),
    )
    for item in results:
        if item.succeeded:
            print(f"{item.path.name}: {item.result.text[:60]}")
        else:
            print(f"{item.path.name}: failed ({item.error})")

    # =========================================================================
    # Example 4: Offline Fallback
    # =========================================================================
    print("\n" + "=" * 70)
    print("Example 4: Offline Fallback")
    print("=" * 70)

    try:
        await manager.load_model("large-v3")
    except ModelUnavailableOfflineError as e:
        print(f"Offline: {e}")
        if e.alternative is not None:
            fallback = TranscriptionEngine(manager, e.alternative, config=config)
            print(f"Falling back to '{e.alternative}'")
            fallback.close()
    except WhisperError as e:
        print(f"Could not load large-v3: {e}")

    engine.close()
    await manager.aclose()


if __name__ == "__main__":
    asyncio.run(main())
