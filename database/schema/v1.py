"""Schema v1 - Marketplace event journal.

This version includes tables for:
- The append-only marketplace event journal, keyed by event sequence number
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'marketplace_events',
            'columns': [
                {'name': 'seq', 'type': 'INT8', 'primary_key': True},
                {'name': 'name', 'type': 'TEXT', 'nullable': False},
                {'name': 'event_time', 'type': 'INT8', 'nullable': False},
                {'name': 'data', 'type': 'JSONB', 'nullable': False, 'default': "'{}'::JSONB"},
                {'name': 'recorded_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_marketplace_events_name', 'columns': ['name']},
                {'name': 'idx_marketplace_events_time', 'columns': ['event_time']}
            ]
        }
    ],
    'migrations': []
}
