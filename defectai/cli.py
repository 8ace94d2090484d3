from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

import typer

from defectai.classify.loader import Classifier, load_classifier
from defectai.config import Settings, load_settings
from defectai.features.presence import PresenceDetector
from defectai.ingest.camera import OpenCVFrameSource
from defectai.inspection.state_machine import InspectionStateMachine
from defectai.logging_config import configure_logging
from defectai.pipeline import FrameResult, InspectionPipeline
from defectai.storage.history import InspectionHistory

app = typer.Typer(help="Real-time defect inspection from a camera stream.")
config_app = typer.Typer(help="Configuration commands.")
history_app = typer.Typer(help="Inspection history commands.")

app.add_typer(config_app, name="config")
app.add_typer(history_app, name="history")

logger = logging.getLogger(__name__)

CONFIG_OPTION_HELP = "Path to YAML configuration file."


def _bootstrap(config_path: Path, log_level: str | None = None) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging, level_override=log_level)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _fail(exc: Exception) -> typer.Exit:
    logger.error("Command failed: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


@config_app.command("show")
def show_config(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="DEFECTAI_CONFIG",
        help=CONFIG_OPTION_HELP,
    )
) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@app.command("run")
def run_inspection(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="DEFECTAI_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
    source: str | None = typer.Option(None, help="Camera index, video file, or stream URL. Overrides camera.source."),
    max_frames: int = typer.Option(0, help="Stop after this many evaluated frames (0 runs until interrupted)."),
    log_level: str | None = typer.Option(None, help="Override the configured log level."),
) -> None:
    """Run the live inspection loop and record completed inspections."""

    settings = _bootstrap(config_path, log_level)
    frame_source = OpenCVFrameSource(
        source if source is not None else settings.camera.source,
        working_size=(settings.presence.working_width, settings.presence.working_height),
        frame_size=(settings.camera.frame_width, settings.camera.frame_height),
        reconnect_attempts=settings.camera.reconnect_attempts,
        reconnect_delay_seconds=settings.camera.reconnect_delay_seconds,
        max_failed_reads=settings.camera.max_failed_reads,
    )

    try:
        classifier = _load_configured_classifier(settings)
        frame_source.open()
    except (RuntimeError, ValueError) as exc:
        raise _fail(exc) from exc

    pipeline = _build_pipeline(settings, frame_source, classifier)
    frame_interval = 1.0 / settings.camera.analysis_fps
    evaluated = 0
    completed: list[dict[str, Any]] = []

    try:
        while max_frames <= 0 or evaluated < max_frames:
            started_at = time.perf_counter()
            result = pipeline.step()
            evaluated += 1
            event = _frame_event(result)
            if event is not None:
                typer.echo(json.dumps(event))
                if event["event"] == "completed":
                    completed.append(event)

            if frame_source.exhausted:
                logger.info("Frame source %s is exhausted; stopping inspection loop.", frame_source.source)
                if pipeline.state_machine.abort():
                    logger.warning("Stream ended during an inspection; the partial inspection was discarded.")
                break

            elapsed = time.perf_counter() - started_at
            if elapsed < frame_interval:
                time.sleep(frame_interval - elapsed)
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping inspection loop.")
    except (RuntimeError, ValueError, OSError) as exc:
        raise _fail(exc) from exc
    finally:
        frame_source.release()

    typer.echo(
        json.dumps(
            {
                "status": "ok",
                "frames_evaluated": evaluated,
                "inspections_completed": len(completed),
                "source_exhausted": frame_source.exhausted,
                "stats": pipeline.stats.to_dict(),
            },
            indent=2,
        )
    )


@app.command("presence")
def presence_scan(
    video_path: Path = typer.Argument(..., help="Video file to scan for object enter/leave events."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="DEFECTAI_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Run presence detection over a recorded video and print enter/leave edges."""

    settings = _bootstrap(config_path)
    resolved_path = video_path.expanduser().resolve()
    if not resolved_path.exists():
        typer.echo(f"Error: Video file not found: {resolved_path}", err=True)
        raise typer.Exit(code=1)

    try:
        result = scan_presence_events(resolved_path, settings)
    except (RuntimeError, ValueError) as exc:
        raise _fail(exc) from exc

    logger.info("Presence scan completed for %s", resolved_path)
    typer.echo(json.dumps(result, indent=2))


@history_app.command("stats")
def history_stats(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="DEFECTAI_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Print totals and defect rate over the stored history."""

    settings = _bootstrap(config_path)
    history = InspectionHistory(settings.storage.history_path)
    typer.echo(json.dumps(history.stats().to_dict(), indent=2))


@history_app.command("list")
def history_list(
    limit: int = typer.Option(50, help="Maximum number of records, newest first."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="DEFECTAI_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Print recent inspection records (thumbnails omitted)."""

    settings = _bootstrap(config_path)
    history = InspectionHistory(settings.storage.history_path)
    rows = []
    for record in history.list_records(limit=limit):
        row = record.to_dict()
        row["thumbnail"] = bool(record.thumbnail)
        rows.append(row)
    typer.echo(json.dumps(rows, indent=2))


@history_app.command("export")
def history_export(
    output_path: Path | None = typer.Option(None, "--output", "-o", help="CSV destination. Defaults to storage.export_dir."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="DEFECTAI_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Export the inspection history as CSV."""

    settings = _bootstrap(config_path)
    history = InspectionHistory(settings.storage.history_path)
    destination = output_path or (
        Path(settings.storage.export_dir) / f"defect-inspections-{int(time.time() * 1000)}.csv"
    )
    exported = history.export_csv(destination)
    if exported is None:
        typer.echo("No inspections to export.", err=True)
        return
    typer.echo(json.dumps({"csv": str(exported)}, indent=2))


@history_app.command("clear")
def history_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="DEFECTAI_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Delete all stored inspection records."""

    settings = _bootstrap(config_path)
    if not yes:
        typer.confirm("Clear all inspection history?", abort=True)
    InspectionHistory(settings.storage.history_path).clear()
    typer.echo(json.dumps({"status": "cleared"}, indent=2))


def scan_presence_events(video_path: Path, settings: Settings) -> dict[str, Any]:
    """Evaluate every frame of ``video_path`` and collect presence edges."""

    detector = PresenceDetector.from_settings(settings.presence)
    frame_source = OpenCVFrameSource(
        str(video_path),
        working_size=(settings.presence.working_width, settings.presence.working_height),
        reconnect_attempts=0,
    )

    events: list[dict[str, Any]] = []
    motion_ratios: list[float] = []
    frame_index = 0
    frame_source.open()
    try:
        while True:
            frame = frame_source.read()
            if frame is None:
                break
            signal = detector.detect(frame.working)
            motion_ratios.append(detector.last_motion_ratio)
            if signal.just_entered or signal.just_left:
                events.append(
                    {
                        "frame_index": frame_index,
                        "event": "entered" if signal.just_entered else "left",
                        "motion_ratio": round(detector.last_motion_ratio, 6),
                    }
                )
            frame_index += 1
    finally:
        frame_source.release()

    return {
        "status": "ok",
        "video_path": str(video_path),
        "frame_count": frame_index,
        "event_count": len(events),
        "events": events,
        "motion_ratio_peak": round(max(motion_ratios), 6) if motion_ratios else 0.0,
        "still_present_at_end": detector.present,
    }


def _load_configured_classifier(settings: Settings) -> Classifier | None:
    if not settings.classifier.factory:
        logger.warning("No classifier.factory configured; running presence detection only.")
        return None
    return load_classifier(settings.classifier.factory, **settings.classifier.options)


def _build_pipeline(
    settings: Settings,
    frame_source: OpenCVFrameSource,
    classifier: Classifier | None,
) -> InspectionPipeline:
    return InspectionPipeline(
        frame_source=frame_source,
        classifier=classifier,
        detector=PresenceDetector.from_settings(settings.presence),
        state_machine=InspectionStateMachine(buffer_size=settings.inspection.buffer_size),
        history=InspectionHistory(settings.storage.history_path),
        every_n_frames=settings.classifier.every_n_frames,
        auto_save=settings.inspection.auto_save,
        thumbnail_size=settings.camera.thumbnail_size,
    )


def _frame_event(result: FrameResult) -> dict[str, Any] | None:
    outcome = result.outcome
    if outcome.inspection_complete:
        verdict = outcome.final_result
        return {
            "event": "completed",
            "status": verdict.status if verdict else None,
            "label": verdict.label if verdict else None,
            "confidence": round(verdict.confidence, 4) if verdict else None,
            "record_id": result.saved_record.id if result.saved_record else None,
        }
    if outcome.state_changed:
        return {"event": "started"}
    return None


if __name__ == "__main__":
    app()
