"""BioTwin CLI.

Usage:
    biotwin serve       - Start the renderer-facing server
    biotwin geometry    - Convert a saved mask (.npy) to shapes and particles
    biotwin segment     - Segment an image at a point with the onnx models
    biotwin replay      - Replay a landmark recording through the gesture pipeline
    biotwin track       - Track gestures live from the camera
    biotwin benchmark   - Run performance benchmarks
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Optional

try:
    import typer
except ImportError:
    raise ImportError("typer is required for CLI. Install with: pip install typer")

from biotwin.config import BioTwinConfig, load_config

app = typer.Typer(
    name="biotwin",
    help="🧬 Gesture-driven segmentation explorer.",
    add_completion=False,
)


@app.callback()
def configure(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    log_level: str = typer.Option("warning", help="Log level"),
):
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = load_config(config)


def _config(ctx: typer.Context) -> BioTwinConfig:
    return ctx.obj if isinstance(ctx.obj, BioTwinConfig) else BioTwinConfig()


def _write_json(data: dict, output: Optional[str]):
    text = json.dumps(data)
    if output:
        Path(output).write_text(text)
        typer.echo(f"💾 Saved to: {output}")
    else:
        typer.echo(text)


@app.command()
def serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Port"),
    load_models: bool = typer.Option(False, "--load-models", help="Load onnx models at startup"),
):
    """Start the websocket server."""
    import uvicorn
    from biotwin.server import app as fastapi_app, state

    config = _config(ctx)
    if load_models:
        config.inference.autoload = True
    state.configure(config)

    host = host or config.server.host
    port = port or config.server.port
    typer.echo(f"🚀 Starting BioTwin server on {host}:{port}")
    uvicorn.run(fastapi_app, host=host, port=port, log_level=config.server.log_level)


@app.command()
def geometry(
    ctx: typer.Context,
    mask_path: str = typer.Argument(..., help="Path to a 2D mask saved with numpy.save"),
    output: Optional[str] = typer.Option(None, "-o", help="Output JSON path"),
    seed: Optional[int] = typer.Option(None, help="Seed for particle jitter"),
):
    """Convert a mask to contour shapes and a particle cloud."""
    import numpy as np
    from biotwin.geometry_pipeline import GeometryPipeline
    from biotwin.mask import as_mask

    path = Path(mask_path)
    if not path.exists():
        typer.echo(f"❌ Mask not found: {mask_path}", err=True)
        raise typer.Exit(1)

    try:
        mask = as_mask(np.load(path, allow_pickle=False))
    except ValueError as e:
        typer.echo(f"❌ Invalid mask: {e}", err=True)
        raise typer.Exit(1)

    result = GeometryPipeline(_config(ctx).geometry).run(mask, rng=np.random.default_rng(seed))
    typer.echo(
        f"🔷 {len(result.shapes)} shape(s), {len(result.particles)} particles", err=True
    )
    _write_json(result.to_dict(), output)


@app.command()
def segment(
    ctx: typer.Context,
    image: str = typer.Argument(..., help="Image file"),
    x: float = typer.Argument(..., help="Normalized x of the foreground point"),
    y: float = typer.Argument(..., help="Normalized y of the foreground point"),
    encoder: Optional[str] = typer.Option(None, help="Encoder onnx model"),
    decoder: Optional[str] = typer.Option(None, help="Decoder onnx model"),
    output: Optional[str] = typer.Option(None, "-o", help="Output JSON path"),
    save_mask: Optional[str] = typer.Option(None, help="Also save the raw mask (.npy)"),
):
    """Segment an image at (x, y) and print the resulting geometry."""
    import numpy as np
    from biotwin.geometry_pipeline import GeometryPipeline
    from biotwin.inference import (
        InferenceError, SamBackend, SessionManager, load_image, preprocess_image,
    )

    config = _config(ctx)
    if not (0.0 <= x <= 1.0 and 0.0 <= y <= 1.0):
        typer.echo("❌ x and y must be in [0, 1]", err=True)
        raise typer.Exit(1)

    backend = SamBackend(SessionManager(
        encoder or config.inference.encoder_path,
        decoder or config.inference.decoder_path,
        config.inference.providers,
    ))

    try:
        pixels = load_image(image)
        backend.load(lambda status: typer.echo(f"   {status}", err=True))
        t0 = time.perf_counter()
        backend.encode(preprocess_image(pixels), version=1)
        t1 = time.perf_counter()
        decoded = backend.decode(x, y)
        t2 = time.perf_counter()
    except (FileNotFoundError, InferenceError) as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    typer.echo(
        f"🧠 encode {1000 * (t1 - t0):.0f} ms, decode {1000 * (t2 - t1):.0f} ms", err=True
    )
    if save_mask:
        np.save(save_mask, decoded.mask)

    result = GeometryPipeline(config.geometry).run(decoded.mask, version=1)
    typer.echo(f"🔷 {len(result.shapes)} shape(s), {len(result.particles)} particles", err=True)
    _write_json(result.to_dict(), output)


@app.command()
def replay(
    ctx: typer.Context,
    recording: str = typer.Argument(..., help="Path to recording file"),
    speed: float = typer.Option(1.0, help="Playback speed multiplier"),
    realtime: bool = typer.Option(False, help="Play at original timing"),
):
    """Replay a landmark recording through classification and event detection."""
    from biotwin.recorder import LandmarkPlayer
    from biotwin.tracking import HandTrackingLoop

    path = Path(recording)
    if not path.exists():
        typer.echo(f"❌ Recording not found: {recording}", err=True)
        raise typer.Exit(1)

    player = LandmarkPlayer.load(path)
    typer.echo(f"▶️  Replaying {path.name} ({player.frame_count} frames, {player.duration:.1f}s)")

    gesture = _config(ctx).gesture
    loop = HandTrackingLoop(gesture.build_classifier(), gesture.build_detector())
    loop.set_handlers(on_action=lambda action: typer.echo(f"   ⚡ {action.to_dict()}"))

    frames = player.play_realtime(speed=speed) if realtime else player.play()
    for frame in frames:
        events = loop.process_hands(frame.hands, frame.timestamp)
        for transition in events.transitions:
            typer.echo(f"   🤚 {transition} @ {frame.timestamp:.2f}s")

    stats = loop.stats
    rotation = loop.detector.rotation
    typer.echo(f"\n✅ Replay complete. {stats.total_actions} actions, "
               f"rotation=({rotation.x:.3f}, {rotation.y:.3f})")


@app.command()
def track(
    ctx: typer.Context,
    camera: int = typer.Option(0, help="Camera device index"),
    duration: float = typer.Option(0, help="Duration in seconds (0 = until Ctrl+C)"),
    record: Optional[str] = typer.Option(None, help="Record landmarks to this JSON file"),
):
    """Track gestures from the camera and print one-shot actions."""
    import cv2
    from biotwin.provider import MediaPipeLandmarkProvider
    from biotwin.recorder import LandmarkRecorder
    from biotwin.tracking import HandTrackingLoop

    cap = cv2.VideoCapture(camera)
    if not cap.isOpened():
        typer.echo(f"❌ Could not open camera {camera}", err=True)
        raise typer.Exit(1)

    gesture = _config(ctx).gesture
    provider = MediaPipeLandmarkProvider()
    loop = HandTrackingLoop(gesture.build_classifier(), gesture.build_detector(), provider)
    loop.set_handlers(on_action=lambda action: typer.echo(f"\n   ⚡ {action.to_dict()}"))
    recorder = LandmarkRecorder()
    if record:
        recorder.start()

    typer.echo(f"🎥 Tracking from camera {camera}... Press Ctrl+C to stop")
    start = time.monotonic()

    try:
        while True:
            ret, frame = cap.read()
            if not ret:
                continue

            hands = provider.detect(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))
            events = loop.process_hands(hands)
            recorder.add_frame(hands, [a.to_dict() for a in events.actions])

            if loop.stats.total_frames % 30 == 0:
                stats = loop.stats
                typer.echo(f"\r   Frames: {stats.total_frames} | FPS: {stats.fps:.0f} | "
                           f"Hands: {len(hands)}", nl=False)

            if duration > 0 and (time.monotonic() - start) >= duration:
                break
    except KeyboardInterrupt:
        pass
    finally:
        cap.release()
        provider.close()

    if record:
        recorder.stop()
        recorder.save(record)
        typer.echo(f"\n💾 Saved {recorder.frame_count} frames to: {record}")


@app.command()
def benchmark(
    ctx: typer.Context,
    iterations: int = typer.Option(1000, help="Gesture frames to process"),
    mask_size: int = typer.Option(256, help="Synthetic mask side length"),
    masks: int = typer.Option(20, help="Masks to convert"),
):
    """Benchmark the gesture loop and the mask-to-geometry pipeline."""
    import numpy as np
    from biotwin.geometry_pipeline import GeometryPipeline
    from biotwin.profiler import PipelineProfiler
    from biotwin.tracking import HandTrackingLoop

    config = _config(ctx)
    rng = np.random.default_rng(42)
    profiler = PipelineProfiler()

    typer.echo(f"⚡ Gesture loop: {iterations} frames")
    loop = HandTrackingLoop(
        config.gesture.build_classifier(), config.gesture.build_detector(), profiler=profiler,
    )
    hands = [rng.random((21, 3)).astype(np.float32)]
    t0 = time.perf_counter()
    for i in range(iterations):
        loop.process_hands(hands, timestamp=i / 30.0)
    gesture_ms = (time.perf_counter() - t0) / max(iterations, 1) * 1000

    typer.echo(f"⚡ Geometry: {masks} masks of {mask_size}x{mask_size}")
    pipeline = GeometryPipeline(config.geometry, profiler)
    yy, xx = np.mgrid[0:mask_size, 0:mask_size]
    center = mask_size / 2
    blob = (1.0 - np.hypot(xx - center, yy - center) / center).astype(np.float32)
    t0 = time.perf_counter()
    for _ in range(masks):
        pipeline.run(blob, rng=rng)
    geometry_ms = (time.perf_counter() - t0) / max(masks, 1) * 1000

    typer.echo(f"\n📊 Results:")
    typer.echo(f"   Gesture frame:  {gesture_ms:.3f} ms")
    typer.echo(f"   Mask→geometry:  {geometry_ms:.2f} ms")

    typer.echo(f"\n📈 Stage breakdown:")
    for name, stats in profiler.summary().items():
        typer.echo(f"   {name:20s} avg={stats['avg_ms']:.3f}ms  p95={stats['p95_ms']:.3f}ms")


def main():
    app()


if __name__ == "__main__":
    main()
