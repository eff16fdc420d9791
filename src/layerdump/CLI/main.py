"""
Command Line Interface for layerdump.
"""
import json
import tempfile
from pathlib import Path

import click
from jinja2 import Template

from ..CONFIG.settings import Settings
from ..exceptions import LayerDumpError
from ..LAYERS.archive_reader import unpack_archive
from ..MANAGERS.layer_manager import LayerManager
from ..PARSERS.manifest_parser import ManifestParser
from ..REGISTRY.image_cache import ImageCache
from ..REGISTRY.image_exporter import ImageExporter
from ..REGISTRY.image_reference import ImageReference
from ..UTILS.logging_setup import setup_logging

LAYER_LIST_TEMPLATE = Template(
    "{% for position, command in layers.items() %}"
    "{{ '%3d' | format(position) }}  {{ command }}\n"
    "{% endfor %}"
)

CACHE_LIST_TEMPLATE = Template(
    "{% for image in images %}"
    "{{ image.image_id[:19] }}  {{ '%10s' | format(size(image.size)) }}  "
    "{{ image.exported_at }}  {{ image.reference }}\n"
    "{% endfor %}"
    "Total: {{ size(total) }}\n"
)


def layer_option(func):
    """Shared --layer option; negative values count from the newest layer."""
    return click.option(
        '--layer', '-l', type=int, required=True,
        help='Layer number as shown by "layer list", starting at 0. '
             'Negative numbers count from the top, so -1 is the last layer.'
    )(func)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2))


def _layer_manager(ctx) -> LayerManager:
    """
    Acquires, unpacks and parses the selected image once per invocation.
    """
    obj = ctx.find_root().obj
    if 'manager' in obj:
        return obj['manager']

    settings = obj['settings']
    image = obj['image']
    archive = obj['archive']
    if not image and not archive:
        raise click.UsageError("Either --image or --archive is required for this command.")

    scratch = Path(ctx.find_root().with_resource(
        tempfile.TemporaryDirectory(prefix="layerdump-", dir=settings.scratch_dir)
    ))

    try:
        if archive:
            archive_path = Path(archive)
            base_name = archive_path.stem
        else:
            try:
                base_name = ImageReference.parse(image).base_name
            except ValueError as e:
                raise click.BadParameter(str(e), param_hint="'--image'")
            exporter = ImageExporter(timeout=settings.docker_timeout,
                                     retries=settings.export_retries)
            cache = ImageCache(str(settings.cache_dir)) if settings.use_cache else None
            archive_path = exporter.acquire(image, cache=cache, scratch_dir=scratch)

        unpack_path = unpack_archive(archive_path, scratch / base_name)
        unpacked = ManifestParser().parse(unpack_path)
    except LayerDumpError as e:
        raise click.ClickException(str(e))

    obj['manager'] = LayerManager(unpacked, scratch / f"{base_name}-fs")
    return obj['manager']


def _run(operation, *args, **kwargs):
    try:
        return operation(*args, **kwargs)
    except LayerDumpError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option('--image', '-i', help='Reference to the image that should be used')
@click.option('--archive', '-a', type=click.Path(exists=True, dir_okay=False),
              help='Use an already exported image archive instead of the Docker daemon')
@click.option('--config', 'config_file', type=click.Path(dir_okay=False),
              help='YAML settings file')
@click.option('--cache-dir', type=click.Path(file_okay=False),
              help='Directory for cached image exports')
@click.option('--no-cache', is_flag=True, help='Always export the image again')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logs')
@click.pass_context
def cli(ctx, image, archive, config_file, cache_dir, no_cache, verbose):
    """
    layerdump - inspect and extract container image layers.

    Reconstructs the filesystem of an image from its layers, either
    completely or for any range of layers.
    """
    ctx.ensure_object(dict)
    try:
        settings = Settings.load(
            config_file=config_file,
            cache_dir=cache_dir,
            use_cache=False if no_cache else None,
            log_level='DEBUG' if verbose else None,
        )
    except LayerDumpError as e:
        raise click.ClickException(str(e))

    setup_logging(settings.log_level, settings.log_file)
    ctx.obj['settings'] = settings
    ctx.obj['image'] = image
    ctx.obj['archive'] = archive


@cli.command()
@click.option('--output', '-o', type=click.Path(), required=True,
              help='Path to output directory. If it already exists, it will be overwritten')
@click.pass_context
def dump(ctx, output):
    """Dump all image layers into output."""
    manager = _layer_manager(ctx)
    _run(manager.dump, output)


@cli.command()
@click.option('--path', '-p', required=True, help='Path to source in the image')
@click.option('--output', '-o', type=click.Path(), required=True, help='Path to output')
@click.pass_context
def extract(ctx, path, output):
    """Extract a single file or directory from the image."""
    manager = _layer_manager(ctx)
    _run(manager.extract, path, output)


@cli.group()
def layer():
    """Investigate single layers."""


@layer.command('list')
@click.option('--format', 'output_format', type=click.Choice(['json', 'text']), default='json')
@click.pass_context
def list_layers(ctx, output_format):
    """List all layers with their creation command."""
    layers = _run(_layer_manager(ctx).list_layers)
    if output_format == 'text':
        click.echo(LAYER_LIST_TEMPLATE.render(layers=layers), nl=False)
    else:
        _echo_json(layers)


@layer.command()
@layer_option
@click.pass_context
def inspect(ctx, layer):
    """Show layer info with added and removed files."""
    info = _run(_layer_manager(ctx).inspect, layer)
    _echo_json(info.model_dump())


@layer.command('dump')
@layer_option
@click.option('--stack', is_flag=True,
              help='Include preceding layers in the output. '
                   '"--layer -1 --stack" is the same as a full dump.')
@click.option('--output', '-o', type=click.Path(), required=True,
              help='Path to output directory. If it already exists, it will be overwritten')
@click.pass_context
def dump_layer(ctx, layer, stack, output):
    """Dump a single image layer. This will preserve whiteout files."""
    manager = _layer_manager(ctx)
    _run(manager.dump_layer, layer, output, stack=stack)


@layer.command('extract')
@layer_option
@click.option('--path', '-p', required=True, help='Path to source in the image layer')
@click.option('--output', '-o', type=click.Path(), required=True, help='Path to output')
@click.pass_context
def extract_from_layer(ctx, layer, path, output):
    """Extract a file from a single layer."""
    manager = _layer_manager(ctx)
    _run(manager.extract_from_layer, layer, path, output)


@cli.group()
def cache():
    """Manage cached image exports."""


@cache.command('list')
@click.pass_context
def list_cache(ctx):
    """List cached image archives."""
    image_cache = ImageCache(str(ctx.find_root().obj['settings'].cache_dir))
    click.echo(
        CACHE_LIST_TEMPLATE.render(
            images=image_cache.list_images(),
            total=image_cache.get_cache_size(),
            size=ImageCache.format_size,
        ),
        nl=False,
    )


@cache.command('prune')
@click.option('--max-age-days', type=int, help='Only remove archives older than this')
@click.pass_context
def prune_cache(ctx, max_age_days):
    """Remove cached image archives."""
    image_cache = ImageCache(str(ctx.find_root().obj['settings'].cache_dir))
    stats = image_cache.prune(max_age_days=max_age_days)
    click.echo(
        f"Removed {stats['removed_images']} image(s), "
        f"freed {ImageCache.format_size(stats['freed_bytes'])}"
    )


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
