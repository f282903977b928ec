"""
Django management command to print a delivery price breakdown.

Usage:
    python manage.py quote --weight 5 --distance 10 --cluster Medium
    python manage.py quote --weight 2 --from 12.9716,77.5946 --to 13.0827,80.2707
"""
from django.core.management.base import BaseCommand, CommandError

from core.exceptions import ValidationError
from logistics.models import Location, SizeCluster
from logistics.services.pricing import PricingEngine


def _coordinates(value):
    try:
        lat, lng = (float(part) for part in value.split(','))
    except ValueError:
        raise CommandError(f"Expected 'lat,lng', got {value!r}")
    return Location(address=value, latitude=lat, longitude=lng)


class Command(BaseCommand):
    help = 'Print the price breakdown for a package'

    def add_arguments(self, parser):
        parser.add_argument('--weight', required=True, help='Package weight in kg')
        parser.add_argument('--distance', help='Distance in km')
        parser.add_argument('--from', dest='pickup', help='Pickup as lat,lng')
        parser.add_argument('--to', dest='drop', help='Drop as lat,lng')
        parser.add_argument(
            '--cluster', default=SizeCluster.SMALL, choices=SizeCluster.values,
            help='Size cluster (default: Small)',
        )

    def handle(self, *args, **options):
        engine = PricingEngine()

        distance = options['distance']
        if distance is None:
            if not (options['pickup'] and options['drop']):
                raise CommandError('Give --distance, or both --from and --to')
            distance = engine.estimate_distance(
                _coordinates(options['pickup']), _coordinates(options['drop'])
            )
            self.stdout.write(f"Straight-line distance: {distance} km")

        try:
            snapshot = engine.quote(options['weight'], distance, options['cluster'])
        except ValidationError as e:
            raise CommandError(e.message)

        labels = {
            'base_price': 'Base price',
            'weight_charge': 'Weight charge',
            'distance_charge': 'Distance charge',
            'cluster_charge': f"Cluster charge ({options['cluster']})",
        }
        display = snapshot.display()
        for key, label in labels.items():
            self.stdout.write(f"  {label:<28} {display[key]:>12}")
        self.stdout.write(self.style.SUCCESS(f"  {'Total':<28} {display['total_price']:>12}"))
