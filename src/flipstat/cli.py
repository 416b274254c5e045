# src/flipstat/cli.py
"""CLI commands for FlipStat."""

import json
import logging
import os
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
import yaml
from dotenv import load_dotenv

from flipstat.db import Database
from flipstat.compute.aggregator import (
    MissingReferenceError,
    SubsegmentAggregator,
    format_report_card,
)
from flipstat.compute.evaluations import (
    EvaluationStore,
    UnknownEvaluationTagError,
    load_weights_from_config,
)
from flipstat.compute.profitability import (
    ProfitabilityError,
    compute_both_scenarios,
    format_scenarios,
    load_flipping_params_from_config,
)
from flipstat.compute.reference_price import load_recency_from_config
from flipstat.compute.segments import listed_address_ids
from flipstat.models import parse_timestamp

# Load .env file
load_dotenv()

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


def load_config(config_path: str = 'config.yml') -> dict:
    """Load configuration from YAML file.

    Recency parameters can be overridden via environment variables:
    - FLIPSTAT_RECENCY_FLOOR: Override recency.floor
    - FLIPSTAT_RECENCY_HORIZON: Override recency.horizon_days
    """
    path = Path(config_path)
    if not path.exists():
        raise click.ClickException(f"Config file not found: {config_path}")

    try:
        with open(path) as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise click.ClickException(f"Invalid YAML in config file: {e}")

    if config is None:
        raise click.ClickException("Config file is empty")

    if os.environ.get('FLIPSTAT_RECENCY_FLOOR'):
        config.setdefault('recency', {})['floor'] = float(os.environ['FLIPSTAT_RECENCY_FLOOR'])
    if os.environ.get('FLIPSTAT_RECENCY_HORIZON'):
        config.setdefault('recency', {})['horizon_days'] = float(os.environ['FLIPSTAT_RECENCY_HORIZON'])

    return config


def read_snapshot(path: str) -> dict:
    """Read a JSON or YAML snapshot file."""
    with open(path) as f:
        if Path(path).suffix.lower() in ('.yml', '.yaml'):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    if not isinstance(data, dict):
        raise click.ClickException(f"Snapshot must be a mapping of sections: {path}")
    return data


def _parse_as_of(value: Optional[str]) -> datetime:
    if not value:
        return parse_timestamp(datetime.now(timezone.utc))
    try:
        return parse_timestamp(value)
    except ValueError:
        raise click.ClickException(f"Invalid --as-of date: {value}")


def _load_evaluations(db: Database, config: dict) -> EvaluationStore:
    try:
        return EvaluationStore(load_weights_from_config(config), db.load_evaluations())
    except UnknownEvaluationTagError as e:
        raise click.ClickException(f"{e}. Add it to 'weights' in the config or clear it.")
    except ValueError as e:
        raise click.ClickException(f"Invalid weights: {e}")


def _build_aggregator(db: Database, config: dict, area_id: str) -> SubsegmentAggregator:
    """Load one area (plus addresses listed by its segments) into an aggregator."""
    known_areas = db.get_map_area_ids()
    if area_id not in known_areas:
        raise click.ClickException(f"Unknown area: {area_id}")

    segments = db.get_segments_by_area(area_id)
    subsegments = []
    for segment in segments:
        subsegments.extend(db.get_subsegments_by_segment(segment.id))

    addresses = {a.id: a for a in db.get_addresses_in_area(area_id)}
    extra_ids = listed_address_ids(segments) - set(addresses)
    for address in db.get_addresses_by_ids(extra_ids):
        addresses[address.id] = address

    objects = db.get_objects_by_addresses(addresses)
    logger.info(
        f"Area {area_id}: {len(segments)} segments, {len(subsegments)} subsegments, "
        f"{len(addresses)} addresses, {len(objects)} objects"
    )

    try:
        policy = load_recency_from_config(config)
    except ValueError as e:
        raise click.ClickException(f"Invalid recency settings: {e}")

    return SubsegmentAggregator(
        objects=objects,
        addresses=list(addresses.values()),
        segments=segments,
        subsegments=subsegments,
        evaluations=_load_evaluations(db, config),
        policy=policy,
        known_area_ids=known_areas,
    )


@click.group()
@click.option('--config', '-c', default='config.yml', help='Path to config file')
@click.option('--db', default='data/flipstat.db', help='Path to database')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, db, verbose):
    """FlipStat: reference prices and exposure for flat flipping."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['db_path'] = db
    ctx.obj['verbose'] = verbose

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.command()
@click.pass_context
def status(ctx):
    """Show database contents and last run info."""
    with Database(ctx.obj['db_path']) as db:
        db.init_schema()

        click.echo("FlipStat v0.1.0")
        click.echo(f"Database: {ctx.obj['db_path']}")

        try:
            config = load_config(ctx.obj['config_path'])
            weights = load_weights_from_config(config)
            click.echo("Weights: " + ', '.join(f"{tag}={w}" for tag, w in weights.items()))
        except click.ClickException as e:
            click.echo(f"Config: Error loading ({e.message})")

        last_run = db.get_last_successful_run()
        if last_run:
            click.echo(f"Last successful run: {last_run['completed_at']}")
            click.echo(f"  Type: {last_run['run_type']}")
            click.echo(f"  Records: {last_run.get('records_processed', 'N/A')}")
        else:
            click.echo("No successful runs yet")

        for table in ('map_areas', 'addresses', 'real_estate_objects',
                      'segments', 'subsegments', 'evaluations'):
            click.echo(f"{table}: {db.count(table):,}")


@cli.command('import')
@click.argument('snapshot', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def import_snapshot(ctx, snapshot):
    """Load a JSON/YAML snapshot into the database."""
    db = Database(ctx.obj['db_path'])
    db.init_schema()

    run_id = db.start_run('import', 'cli')

    try:
        data = read_snapshot(snapshot)
        counts = db.import_snapshot(data)
        for section, n in counts.items():
            click.echo(f"  {section}: {n:,}")

        total = sum(counts.values())
        click.echo(f"Imported {total:,} records from {snapshot}")
        db.complete_run(run_id, status='success', records_processed=total)

    except Exception as e:
        logger.exception("Import failed")
        db.complete_run(run_id, status='failed', error_message=str(e))
        raise click.ClickException(f"Import failed: {e}")

    finally:
        db.close()


@cli.command()
@click.argument('object_id')
@click.argument('tag', required=False)
@click.option('--clear', is_flag=True, help='Remove the evaluation')
@click.pass_context
def evaluate(ctx, object_id, tag, clear):
    """Tag a sold object's renovation quality (or clear the tag)."""
    if clear == bool(tag):
        raise click.UsageError("Give either TAG or --clear")

    config = load_config(ctx.obj['config_path'])
    weights = load_weights_from_config(config)

    with Database(ctx.obj['db_path']) as db:
        db.init_schema()

        if db.get_object_by_id(object_id) is None:
            raise click.ClickException(f"Object not found: {object_id}")

        if clear:
            previous = db.get_evaluation(object_id)
            db.put_evaluation(object_id, None)
            click.echo(f"Cleared {object_id}" + (f" (was {previous})" if previous else ""))
            return

        if tag not in weights:
            raise click.ClickException(
                f"Unknown tag '{tag}'. Valid: {', '.join(sorted(weights))}"
            )
        db.put_evaluation(object_id, tag)
        click.echo(f"{object_id}: {tag} (weight {weights[tag]})")


@cli.command()
@click.option('--area', '-a', required=True, help='Map area id')
@click.option('--segment', '-s', 'segment_id', default=None, help='Limit to one segment')
@click.option('--subsegment', 'subsegment_id', default=None, help='Limit to one subsegment')
@click.option('--as-of', 'as_of', default=None, help='Reference date (YYYY-MM-DD), default now')
@click.pass_context
def report(ctx, area, segment_id, subsegment_id, as_of):
    """Show price/exposure cards for an area's subsegments."""
    config = load_config(ctx.obj['config_path'])
    reference = _parse_as_of(as_of)

    with Database(ctx.obj['db_path']) as db:
        db.init_schema()
        aggregator = _build_aggregator(db, config, area)

    try:
        if subsegment_id:
            aggregator.select_subsegment(subsegment_id)
        elif segment_id:
            aggregator.select_segment(segment_id)
        else:
            aggregator.show_all()
    except MissingReferenceError as e:
        raise click.ClickException(str(e))

    try:
        cards = aggregator.aggregate(reference)
    except UnknownEvaluationTagError as e:
        raise click.ClickException(str(e))

    click.echo(f"FlipStat Report - area {area}, as of {reference.date().isoformat()}")
    click.echo("=" * 50)
    if not cards:
        click.echo("No subsegments")
        return

    for card in cards:
        click.echo()
        click.echo(format_report_card(card))

    degraded = sum(1 for c in cards if c.is_degraded)
    if degraded:
        click.echo(f"\n{degraded} subsegment(s) could not be computed")


@cli.command()
@click.argument('object_id')
@click.option('--subsegment', 'subsegment_id', required=True, help='Subsegment to price against')
@click.option('--price', type=int, default=None, help='Purchase price (default: object price)')
@click.option('--financing', type=click.Choice(['cash', 'mortgage']), default=None)
@click.option('--tax-type', type=click.Choice(['individual', 'ip']), default=None)
@click.option('--target-roi', type=float, default=None, help='Target annual ROI, percent')
@click.option('--as-of', 'as_of', default=None, help='Reference date (YYYY-MM-DD), default now')
@click.pass_context
def profitability(ctx, object_id, subsegment_id, price, financing, tax_type, target_roi, as_of):
    """Estimate flipping profitability for an object."""
    config = load_config(ctx.obj['config_path'])
    reference = _parse_as_of(as_of)

    with Database(ctx.obj['db_path']) as db:
        db.init_schema()

        obj = db.get_object_by_id(object_id)
        if obj is None:
            raise click.ClickException(f"Object not found: {object_id}")

        subsegment = db.get_subsegment(subsegment_id)
        if subsegment is None:
            raise click.ClickException(f"Subsegment not found: {subsegment_id}")
        segment = db.get_segment(subsegment.segment_id) if subsegment.segment_id else None
        if segment is None or segment.map_area_id is None:
            raise click.ClickException(f"Subsegment {subsegment_id} has no segment/area")

        aggregator = _build_aggregator(db, config, segment.map_area_id)

    aggregator.select_subsegment(subsegment_id)
    try:
        cards = aggregator.aggregate(reference)
    except UnknownEvaluationTagError as e:
        raise click.ClickException(str(e))

    card = cards[0]
    if card.is_degraded:
        raise click.ClickException(f"Subsegment {subsegment_id}: {card.warning}")
    if card.price.is_empty:
        raise click.ClickException(f"Subsegment {subsegment_id} has no evaluated sales")

    purchase_price = price if price is not None else obj.current_price
    if purchase_price <= 0:
        raise click.ClickException(f"Object {object_id} has no price; pass --price")

    try:
        params = load_flipping_params_from_config(
            config,
            reference_price_per_meter=card.price.per_meter_price,
            average_exposure_days=card.exposure.average_days or 0,
        )
        overrides = {}
        if financing:
            overrides['financing'] = financing
        if tax_type:
            overrides['tax_type'] = tax_type
        if target_roi is not None:
            overrides['target_annual_roi'] = target_roi
        params = replace(params, **overrides)

        result = compute_both_scenarios(purchase_price, obj.area_total, params)
    except ProfitabilityError as e:
        raise click.ClickException(str(e))

    click.echo(format_report_card(card))
    click.echo()
    click.echo(format_scenarios(result))


if __name__ == '__main__':
    cli()
