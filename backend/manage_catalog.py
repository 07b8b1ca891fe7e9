#!/usr/bin/env python3
"""
Trip type catalog and tariff utility for the taximeter.

Usage:
    python manage_catalog.py show                                  - Show trip types and rates
    python manage_catalog.py validate <file>                       - Check a trip types JSON file
    python manage_catalog.py export <file>                         - Write the built-in catalog as JSON
    python manage_catalog.py quote <trip_type> <km> [min] [sub]    - Quote a fare
"""

import json
import sys
import os
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from pydantic import ValidationError

from taximeter.config import DEFAULT_TRIP_TYPES, settings
from taximeter.models import FixedRouteTrip, SubDestinationRoute
from taximeter.services.catalog import TripTypeCatalog, get_trip_type_catalog
from taximeter.services.fare_calculator import get_fare_calculator


def show_catalog():
    """Display the trip types and the rate table."""
    catalog = get_trip_type_catalog()
    currency = settings.CURRENCY

    print("\n" + "="*60)
    print("TRIP TYPES")
    print("="*60)
    print(f"{'Id':<20} {'Name':<20} {'Price':<20}")
    print("-"*60)

    for trip_type in catalog.all():
        if isinstance(trip_type, FixedRouteTrip):
            price = f"{trip_type.fixed_price:.2f} up to {trip_type.distance_km} km"
        elif isinstance(trip_type, SubDestinationRoute):
            price = "by sub-destination"
        else:
            price = "metered"
        print(f"{trip_type.id:<20} {trip_type.name:<20} {price:<20}")

        if isinstance(trip_type, SubDestinationRoute):
            for sub_trip in trip_type.sub_trips:
                print(f"  - {sub_trip.id:<17} {sub_trip.name:<20} {sub_trip.fixed_price:.2f}")

    print("-"*60)
    print(f"Total trip types: {len(catalog)} (default: {catalog.default.id})")

    print("\nMETERED TIERS")
    print("-"*30)
    for low, high, fare in settings.METERED_TIERS:
        print(f"{low:>4.1f} - {high:<4.1f} km   {fare:.2f} {currency}")
    print(
        f"from {settings.METERED_CEILING_KM:.1f} km   {settings.METERED_CEILING_FARE:.2f} "
        f"+ {settings.METERED_RATE_PER_KM_BEYOND_CEILING:.2f}/km"
    )
    print(f"\nWaiting: {settings.WAITING_RATE_PER_MINUTE:.2f} {currency}/min")
    print("="*60)


def validate_file(path: str) -> bool:
    """Check that a JSON file is a usable trip type catalog."""
    try:
        with open(path, encoding="utf-8") as fh:
            definitions = json.load(fh)
        catalog = TripTypeCatalog.from_definitions(definitions)
    except (OSError, ValueError, ValidationError) as e:
        print(f"✗ {path} is not a valid trip type catalog:\n{e}")
        return False

    print(f"✓ {path} is valid: {len(catalog)} trip types, default {catalog.default.id!r}")
    return True


def export_catalog(path: str):
    """Write the built-in catalog so it can be edited and used as TRIP_TYPES_FILE."""
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(DEFAULT_TRIP_TYPES, fh, indent=2, ensure_ascii=False)
    print(f"✓ Wrote {len(DEFAULT_TRIP_TYPES)} trip types to {path}")


def quote(trip_type_id: str, distance_km: str, waiting_minutes: str = "0", sub_trip_id: str = None):
    """Print the fare breakdown for a trip."""
    try:
        catalog = get_trip_type_catalog()
        trip_type = catalog.get(trip_type_id)
        sub_trip = None
        if sub_trip_id:
            if not isinstance(trip_type, SubDestinationRoute):
                print(f"Trip type {trip_type_id!r} has no sub-destinations")
                return
            sub_trip = trip_type.find_sub_trip(sub_trip_id)
            if sub_trip is None:
                print(f"Unknown sub-destination {sub_trip_id!r}")
                return

        breakdown = get_fare_calculator().fare_breakdown(
            trip_type, sub_trip, float(distance_km), float(waiting_minutes)
        )
    except ValueError as e:
        print(f"Invalid input: {e}")
        return
    except Exception as e:
        print(f"Error calculating fare: {e}")
        return

    currency = settings.CURRENCY
    print(f"\n{trip_type.name}" + (f" / {sub_trip.name}" if sub_trip else ""))
    print("-"*30)
    print(f"Base:     {breakdown.base:>8.2f} {currency}")
    print(f"Overage:  {breakdown.overage:>8.2f} {currency}")
    print(f"Waiting:  {breakdown.waiting:>8.2f} {currency}")
    print("-"*30)
    print(f"Total:    {breakdown.total:>8.2f} {currency}")


def main():
    """Main entry point."""
    if len(sys.argv) < 2:
        print(__doc__)
        return

    command = sys.argv[1].lower()
    args = sys.argv[2:]

    commands = {
        'show': (show_catalog, 0, 0),
        'validate': (validate_file, 1, 1),
        'export': (export_catalog, 1, 1),
        'quote': (quote, 2, 4),
    }

    if command not in commands:
        print(f"Unknown command: {command}")
        print(__doc__)
        return

    handler, required, accepted = commands[command]
    if not required <= len(args) <= accepted:
        print(f"Wrong number of arguments for {command}")
        print(__doc__)
        return

    result = handler(*args)
    if result is False:
        sys.exit(1)


if __name__ == "__main__":
    main()
