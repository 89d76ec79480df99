"""Stand-in for the bin devices: writes the documents a real classifier would.

Usage:
  python simulate.py waste-event [bin_id] [waste_type] [confidence]
  python simulate.py multiple [count]
  python simulate.py wrong-classification [bin_id] [model_type] [confidence]
  python simulate.py migrate-bins
"""

import argparse
import logging
import random
import sys
import time

from datastore import DataStoreError, create_datastore
from models import BINS, WASTE_EVENTS, WRONG_CLASSIFICATIONS, EventOrigin
from settings import Config
from util import utcnow

logger = logging.getLogger(__name__)

DEVICE_WASTE_TYPES = ['METAL', 'PLASTIC', 'GLASS']


def create_device_event(store, bin_id='bin_001', waste_type='METAL', confidence=0.85, now=None):
    now = now or utcnow()
    event = {
        'bin_id': bin_id,
        'confidence': confidence,
        'event_id': f"manual-test-{int(now.timestamp() * 1000)}",
        'origin': EventOrigin.DEVICE.value,
        'timestamp': now,
        'waste_type': waste_type,
    }
    return store.insert_one(WASTE_EVENTS, event)


def create_wrong_classification(store, bin_id='bin_001', model_type='Clothes', confidence=0.85, now=None):
    now = now or utcnow()
    report = {
        'bin_id': bin_id,
        'confidence': confidence,
        'event_id': f"wrong-classification-{int(now.timestamp() * 1000)}",
        'model_classification_waste_type': model_type,
        'reviewed': False,
        'timestamp': now,
        'user_answered': False,
    }
    return store.insert_one(WRONG_CLASSIFICATIONS, report)


def migrate_bins(store, now=None):
    """Give bins created before leasing existed their lease fields. Returns how many changed."""
    now = now or utcnow()
    updated = 0
    for doc in store.find(BINS, {}):
        if 'active_user' in doc:
            continue
        store.update_one(BINS, {'_id': doc['_id']}, {'$set': {
            'active_user': False,
            'current_user': None,
            'last_activity': now,
        }})
        logger.info("Updated bin %s with lease fields", doc.get('bin_id', doc['_id']))
        updated += 1
    return updated


def build_parser():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    commands = parser.add_subparsers(dest='command', required=True)

    event = commands.add_parser('waste-event', help='insert one device waste event')
    event.add_argument('bin_id', nargs='?', default='bin_001')
    event.add_argument('waste_type', nargs='?', default='METAL')
    event.add_argument('confidence', nargs='?', type=float, default=0.85)

    multiple = commands.add_parser('multiple', help='insert several events one second apart')
    multiple.add_argument('count', nargs='?', type=int, default=3)
    multiple.add_argument('--bin-id', default='bin_001')

    wrong = commands.add_parser('wrong-classification', help='insert one wrong-classification report')
    wrong.add_argument('bin_id', nargs='?', default='bin_001')
    wrong.add_argument('model_type', nargs='?', default='Clothes')
    wrong.add_argument('confidence', nargs='?', type=float, default=0.85)

    commands.add_parser('migrate-bins', help='add missing lease fields to bins')
    return parser


def run(args, store):
    if args.command == 'waste-event':
        doc_id = create_device_event(store, args.bin_id, args.waste_type, args.confidence)
        print(f"Waste event created: {doc_id}")
    elif args.command == 'multiple':
        for i in range(args.count):
            waste_type = DEVICE_WASTE_TYPES[i % len(DEVICE_WASTE_TYPES)]
            confidence = 0.8 + random.random() * 0.2
            doc_id = create_device_event(store, args.bin_id, waste_type, confidence)
            print(f"Waste event {i + 1}/{args.count} created: {doc_id} ({waste_type})")
            if i < args.count - 1:
                time.sleep(1)
    elif args.command == 'wrong-classification':
        doc_id = create_wrong_classification(store, args.bin_id, args.model_type, args.confidence)
        print(f"Wrong classification created: {doc_id}")
    elif args.command == 'migrate-bins':
        print(f"Updated {migrate_bins(store)} bins")


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=Config.LOG_LEVEL)
    config = {name: getattr(Config, name) for name in dir(Config) if name.isupper()}
    try:
        store = create_datastore(config)
        run(args, store)
    except DataStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
