#!/usr/bin/env python3
"""
StreamVault CLI - process, inspect and validate encrypted DASH videos
"""
import asyncio
import sys
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from storage.json_store import JsonFileStore
from worker.config import get_settings
from worker.orchestrator import OrchestrationRequest, build_orchestrator
from worker.processors.analysis import MediaAnalyzer
from worker.queue import VideoProcessingQueue
from worker.security.keys import KeyManager, generate_key_id
from worker.security.xor import xor_file
from worker.utils.encoding import (
    LEGACY_ENCODER_SETTINGS,
    QUALITY_MAPPINGS,
    LegacyEncodingOptions,
    build_enhanced_options,
)
from worker.utils.errors import PipelineError, error_to_dict
from worker.utils.logger import setup_logging

console = Console()


def _status(ok: bool) -> str:
    return "[green]OK[/green]" if ok else "[red]MISSING[/red]"


def _format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


@click.group()
@click.pass_context
def cli(ctx):
    """StreamVault encrypted DASH pipeline"""
    settings = get_settings()
    setup_logging(settings)
    ctx.ensure_object(dict)
    ctx.obj['settings'] = settings


@cli.command()
def check():
    """Check FFmpeg, Shaka Packager, disk space and GPU availability."""
    settings = click.get_current_context().obj['settings']
    orchestrator = build_orchestrator(settings)
    requirements = asyncio.run(orchestrator.check_system_requirements())

    table = Table(title="System Requirements")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Details")

    table.add_row(
        "FFmpeg",
        _status(requirements.ffmpeg['available']),
        requirements.ffmpeg.get('version') or "-",
    )
    table.add_row(
        "Encoders",
        _status(bool(requirements.ffmpeg['codecs'])),
        ", ".join(requirements.ffmpeg['codecs']) or "-",
    )
    table.add_row(
        "Shaka Packager",
        _status(requirements.packager['available']),
        requirements.packager.get('version') or "-",
    )
    table.add_row(
        "Disk space",
        "[green]OK[/green]",
        f"{_format_bytes(requirements.disk_space['available'])} free in {requirements.disk_space['path']}",
    )
    table.add_row(
        "GPU",
        "[green]YES[/green]" if requirements.gpu['available'] else "[yellow]NO[/yellow]",
        requirements.gpu.get('name') or "-",
    )
    console.print(table)

    if not (requirements.ffmpeg['available'] and requirements.packager['available']):
        console.print("\n[red]✗ Required tools are missing[/red]")
        sys.exit(1)
    console.print("\n[green]✓ System ready[/green]")


@cli.command()
@click.argument('video_id')
@click.argument('input_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--encoder', type=click.Choice(sorted(LEGACY_ENCODER_SETTINGS)), help='Named encoder preset')
@click.option('--quality', type=click.Choice(sorted(QUALITY_MAPPINGS)), help='Quality tier tuned to the source bitrate')
@click.option('--gpu/--cpu', 'use_gpu', default=False, help='Use the NVENC encoder with --quality')
@click.option('--no-thumbnail', is_flag=True, help='Skip thumbnail generation')
@click.option('--cleanup-original', is_flag=True, help='Delete the input file after processing')
def process(video_id, input_path, encoder, quality, use_gpu, no_thumbnail, cleanup_original):
    """Transcode, encrypt and package INPUT_PATH as VIDEO_ID."""
    settings = click.get_current_context().obj['settings']

    if encoder and quality:
        raise click.UsageError("--encoder and --quality are mutually exclusive")
    if use_gpu and encoder == 'cpu-h265':
        raise click.UsageError("--gpu cannot be combined with --encoder cpu-h265")

    try:
        result = asyncio.run(_process(settings, video_id, input_path, encoder, quality, use_gpu,
                                      not no_thumbnail, cleanup_original))
    except PipelineError as e:
        error = error_to_dict(e)
        console.print(f"[red]Processing failed ({error['code']}): {error['message']}[/red]")
        sys.exit(1)

    stats = result.statistics
    table = Table(title=f"Processed {video_id}")
    table.add_column("Phase", style="cyan")
    table.add_column("Duration", justify="right")
    for phase, duration_ms in stats.phase_durations.items():
        table.add_row(phase.replace('_', ' ').title(), f"{duration_ms / 1000:.2f}s")
    table.add_row("[bold]Total[/bold]", f"[bold]{stats.total_duration / 1000:.2f}s[/bold]")
    console.print(table)

    console.print(f"Codec: {stats.codec_used} ({'GPU' if stats.used_gpu else 'CPU'})")
    console.print(f"Segments: {stats.segment_count}")
    console.print(
        f"Size: {_format_bytes(result.file_sizes.original)} → {_format_bytes(result.file_sizes.packaged)}"
        f" ({stats.compression_ratio * 100:.1f}%)"
    )
    console.print(f"[green]✓ Manifest: {result.manifest_path}[/green]")


async def _process(settings, video_id, input_path, encoder, quality, use_gpu, generate_thumbnail, cleanup_original):
    orchestrator = build_orchestrator(settings)
    analyzer = MediaAnalyzer(orchestrator.runner, settings.FFPROBE_PATH, timeout_ms=settings.PROBE_TIMEOUT * 1000)
    analysis = await analyzer.analyze(input_path)

    if quality:
        options = build_enhanced_options(quality, use_gpu, analysis)
    else:
        options = LegacyEncodingOptions(encoder=encoder or ('gpu-h265' if use_gpu else 'cpu-h265'))

    request = OrchestrationRequest(
        video_id=video_id,
        input_path=str(Path(input_path).resolve()),
        encoding_options=options,
        video_analysis=analysis,
        generate_thumbnail=generate_thumbnail,
        cleanup_original=cleanup_original,
    )

    queue = VideoProcessingQueue.from_settings(settings)
    result = await queue.process(lambda: orchestrator.execute(request), name=video_id)

    record = {
        'id': video_id,
        'source': Path(input_path).name,
        'duration': analysis.duration,
        'resolution': f"{analysis.width}x{analysis.height}",
        'codec': result.statistics.codec_used,
        'manifest': result.manifest_path,
        'thumbnail': result.thumbnail_path,
        'segments': result.statistics.segment_count,
        'size': result.file_sizes.packaged,
        'processed_at': datetime.utcnow().isoformat(),
    }

    def upsert(videos):
        videos = [v for v in videos if v.get('id') != video_id]
        videos.append(record)
        return videos

    await JsonFileStore().update_json(settings.VIDEO_LIBRARY_FILE, upsert, default=[])
    return result


@cli.command()
@click.argument('video_id')
def validate(video_id):
    """Validate the packaged output of VIDEO_ID."""
    settings = click.get_current_context().obj['settings']
    orchestrator = build_orchestrator(settings)
    report = asyncio.run(orchestrator.packager.validate_packaged_video(video_id))

    table = Table(title=f"Package Validation: {video_id}")
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    for check_name in ('manifest_valid', 'encryption_valid', 'segments_complete'):
        passed = report[check_name]
        table.add_row(
            check_name.replace('_', ' ').title(),
            "[green]PASS[/green]" if passed else "[red]FAIL[/red]",
        )
    console.print(table)

    for issue in report['issues']:
        console.print(f"[yellow]- {issue}[/yellow]")

    if not report['is_valid']:
        console.print("\n[red]✗ Package validation failed[/red]")
        sys.exit(1)
    console.print("\n[green]✓ Package is valid[/green]")


@cli.command()
@click.argument('video_id')
def key(video_id):
    """Show key id and storage status for VIDEO_ID."""
    settings = click.get_current_context().obj['settings']
    key_manager = KeyManager.from_settings(settings)
    exists = asyncio.run(key_manager.key_exists(video_id))

    table = Table(title=f"Encryption Key: {video_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Key ID", generate_key_id(video_id))
    table.add_row("Key file", str(key_manager.key_path(video_id)))
    table.add_row("Stored", "[green]yes[/green]" if exists else "[yellow]no[/yellow]")
    table.add_row("Key URL", key_manager.key_url_template.format(video_id=video_id))
    console.print(table)


@cli.command()
@click.argument('source', type=click.Path(exists=True, dir_okay=False))
@click.argument('destination', type=click.Path(dir_okay=False))
def xor(source, destination):
    """Obfuscate or restore a file with the configured XOR key."""
    settings = click.get_current_context().obj['settings']
    size = asyncio.run(xor_file(source, destination, settings.XOR_ENCRYPTION_KEY))
    console.print(f"[green]✓ Wrote {_format_bytes(size)} to {destination}[/green]")


def main():
    """Main entry point for the StreamVault CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
