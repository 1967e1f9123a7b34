"""
fragxfer CLI

Command-line interface for the fragmented large-file transfer pipeline.

Usage:
    fragxfer run                          # Split, upload, download, verify, combine
    fragxfer generate FILE --size N       # Write a deterministic test file
    fragxfer upload FILE -m manifest.json # Split and upload only
    fragxfer download manifest.json -o OUT
    fragxfer serve                        # Run a storage node
    fragxfer config-example               # Print an example config file
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.logging import RichHandler

from .config import Config, EXAMPLE_CONFIG, load_config
from .errors import ConfigError, TransferError
from .file.generator import generate_test_file
from .file.manifest import TransferManifest
from .pipeline import PipelineDriver, PipelineFailure, PipelineResult

console = Console()


def setup_logging(verbose: bool = False, level_name: str = 'INFO'):
    """Route all logging through a RichHandler on the shared console."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('-c', '--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.pass_context
def cli(ctx, verbose, config_path):
    """fragxfer - fragmented large-file transfer over a storage network."""
    try:
        config = load_config(Path(config_path) if config_path else None)
    except ConfigError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        ctx.exit(2)

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--input', '-i', 'input_path', type=click.Path(dir_okay=False),
              help='Source file (default: file.input_file)')
@click.option('--output', '-o', type=click.Path(dir_okay=False),
              help='Reassembled file (default: <output_directory>/final_file.bin)')
@click.option('--generate/--no-generate', default=None,
              help='Generate the test file first (default: file.generate_test_file)')
@click.pass_context
def run(ctx, input_path, output, generate):
    """Run the whole pipeline on one file."""
    config: Config = ctx.obj['config']
    source = Path(input_path) if input_path else config.file.input_file
    output_path = Path(output) if output else config.file.output_directory / "final_file.bin"
    if generate is None:
        generate = config.file.generate_test_file

    async def run_pipeline() -> bool:
        if generate:
            console.print(f"[dim]Generating {format_size(config.file.test_file_size)} "
                          f"test file at {source}[/dim]")
            try:
                await generate_test_file(source, config.file.test_file_size)
            except TransferError as e:
                console.print(f"[red]✗ Failed to generate test file: {e}[/red]")
                return False

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            up_task = progress.add_task("Uploading...", total=100)
            down_task = progress.add_task("Downloading...", total=100, start=False)

            def on_upload(p):
                progress.update(
                    up_task, completed=p.progress_percent,
                    description=f"Uploading... ({p.completed_fragments}/{p.total_fragments} "
                                f"fragments, {p.phase})"
                )

            def on_download(p):
                progress.start_task(down_task)
                progress.update(
                    down_task, completed=p.progress_percent,
                    description=f"Downloading... ({p.completed_fragments}/{p.total_fragments} "
                                f"fragments)"
                )

            driver = PipelineDriver.from_config(
                config, upload_progress=on_upload, download_progress=on_download,
            )
            try:
                result = await driver.run(source, output_path)
            except PipelineFailure as e:
                failure = e
            else:
                failure = None
            finally:
                await driver.close()

        if failure is not None:
            report_failure(failure)
            return False

        print_manifest(result.manifest, "Upload Summary")
        print_result(result)
        return True

    if not asyncio.run(run_pipeline()):
        sys.exit(1)


@cli.command()
@click.argument('file_path', type=click.Path(dir_okay=False))
@click.option('--size', '-s', type=int, default=None,
              help='Size in bytes (default: file.test_file_size)')
@click.pass_context
def generate(ctx, file_path, size):
    """Write a deterministic test file."""
    config: Config = ctx.obj['config']
    size = config.file.test_file_size if size is None else size
    if size < 0:
        raise click.BadParameter("size must be >= 0", param_hint='--size')

    try:
        path = asyncio.run(generate_test_file(Path(file_path), size))
    except TransferError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓ Wrote {format_size(size)} to {path}[/green]")


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--manifest', '-m', 'manifest_path', type=click.Path(dir_okay=False),
              default='manifest.json', show_default=True, help='Where to save the manifest')
@click.pass_context
def upload(ctx, file_path, manifest_path):
    """Split a file and upload its fragments."""
    config: Config = ctx.obj['config']
    manifest_path = Path(manifest_path)

    async def run_upload() -> bool:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            task = progress.add_task("Uploading...", total=100)

            def on_upload(p):
                progress.update(
                    task, completed=p.progress_percent,
                    description=f"Uploading... ({p.completed_fragments}/{p.total_fragments} "
                                f"fragments, {p.phase})"
                )

            driver = PipelineDriver.from_config(config, upload_progress=on_upload)
            try:
                result = await driver.upload_phase(Path(file_path))
            except PipelineFailure as e:
                failure = e
                result = e.result
            else:
                failure = None
            finally:
                await driver.close()

        if result.manifest is not None:
            # Saved even when partial, so the upload can be resumed or cleaned up
            result.manifest.save(manifest_path)
            console.print(f"[dim]Manifest saved to {manifest_path}[/dim]")

        if failure is not None:
            report_failure(failure)
            return False

        print_manifest(result.manifest, "Uploaded Fragments")
        return True

    if not asyncio.run(run_upload()):
        sys.exit(1)


@cli.command()
@click.argument('manifest_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--output', '-o', type=click.Path(dir_okay=False), required=True,
              help='Reassembled file')
@click.option('--source', type=click.Path(exists=True, dir_okay=False),
              help='Original file to verify against (default: manifest fingerprints)')
@click.pass_context
def download(ctx, manifest_path, output, source):
    """Download, verify and reassemble a file from its manifest."""
    config: Config = ctx.obj['config']

    try:
        manifest = TransferManifest.load(Path(manifest_path))
    except (OSError, ValueError, KeyError) as e:
        console.print(f"[red]✗ Cannot read manifest {manifest_path}: {e}[/red]")
        sys.exit(1)

    async def run_download() -> bool:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            task = progress.add_task("Downloading...", total=100)

            def on_download(p):
                progress.update(
                    task, completed=p.progress_percent,
                    description=f"Downloading... ({p.completed_fragments}/{p.total_fragments} "
                                f"fragments)"
                )

            driver = PipelineDriver.from_config(config, download_progress=on_download)
            try:
                result = await driver.download_phase(
                    manifest, Path(output), Path(source) if source else None,
                )
            except PipelineFailure as e:
                failure = e
            else:
                failure = None
            finally:
                await driver.close()

        if failure is not None:
            report_failure(failure)
            return False

        print_result(result)
        return True

    if not asyncio.run(run_download()):
        sys.exit(1)


@cli.command()
@click.option('--host', default=None, help='Bind address (default: node.host)')
@click.option('--port', type=int, default=None, help='Transfer port (default: node.transfer_port)')
@click.option('--api-port', type=int, default=None, help='REST API port (default: node.api_port)')
@click.option('--no-api', is_flag=True, help='Disable REST API')
@click.option('--data-dir', type=click.Path(file_okay=False), default=None,
              help='Fragment store directory (default: node.data_dir)')
@click.pass_context
def serve(ctx, host, port, api_port, no_api, data_dir):
    """Run a storage node."""
    from .transfer.server import StorageNode

    node_config = ctx.obj['config'].node
    host = host or node_config.host
    port = node_config.transfer_port if port is None else port
    api_port = node_config.api_port if api_port is None else api_port
    data_dir = Path(data_dir) if data_dir else node_config.data_dir

    async def run_node():
        node = StorageNode(data_dir, host=host, port=port, capacity=node_config.capacity)

        try:
            await node.start()

            console.print(Panel.fit(
                f"[bold green]Storage Node Started[/bold green]\n\n"
                f"Transfer Port: [yellow]{node.port}[/yellow]\n"
                f"Data Dir: [blue]{data_dir}[/blue]\n"
                f"Capacity: [yellow]"
                f"{format_size(node_config.capacity) if node_config.capacity else 'unlimited'}"
                f"[/yellow]",
                title="Node Info"
            ))

            if not no_api:
                console.print(f"\n[dim]Control API on http://localhost:{api_port}[/dim]")
                console.print(f"[dim]API docs at http://localhost:{api_port}/docs[/dim]\n")

                from .api import run_api_server
                await run_api_server(node, host=host, port=api_port)
            else:
                console.print("\n[dim]Ctrl+C stops the node[/dim]\n")
                while True:
                    await asyncio.sleep(1)

        except (KeyboardInterrupt, asyncio.CancelledError):
            console.print("\n[yellow]Stopping storage node...[/yellow]")
        finally:
            await node.stop()
            console.print("[green]Storage node stopped[/green]")

    try:
        asyncio.run(run_node())
    except KeyboardInterrupt:
        pass


@cli.command('config-example')
def config_example():
    """Print an example configuration file."""
    click.echo(EXAMPLE_CONFIG.strip())


# === Reporting ===

def print_manifest(manifest: Optional[TransferManifest], title: str):
    """Print one row per receipt."""
    if manifest is None or not len(manifest):
        console.print("[yellow]No fragments uploaded[/yellow]")
        return

    table = Table(title=title)
    table.add_column("Part", justify="right")
    table.add_column("Size", justify="right", style="yellow")
    table.add_column("Transaction", style="cyan")
    table.add_column("Fingerprint", style="green")

    for receipt in manifest:
        table.add_row(
            str(receipt.fragment_index + 1),
            format_size(receipt.length) if receipt.length is not None else "-",
            receipt.transaction_id[:10] + "...",
            receipt.fingerprint.short(),
        )

    console.print(table)


def print_result(result: PipelineResult):
    console.print(Panel.fit(
        f"[bold green]Transfer Completed Successfully[/bold green]\n\n"
        f"Final file: [cyan]{result.output_path}[/cyan]\n"
        f"Size: [yellow]{format_size(result.bytes_written)}[/yellow]\n"
        f"Fragments verified: [yellow]{len(result.results)}[/yellow]\n"
        f"Stages: [dim]{' -> '.join(s.value for s in result.states)}[/dim]",
        title="Result"
    ))


def report_failure(failure: PipelineFailure):
    where = failure.stage.value
    if failure.fragment_index is not None:
        where += f" (fragment {failure.fragment_index})"
    console.print(f"\n[red]✗ Failed during {where}: {failure.cause}[/red]")

    manifest = failure.manifest
    if manifest is not None and len(manifest):
        print_manifest(manifest, "Receipts Before Failure")


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
