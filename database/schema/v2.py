"""Schema v2 - Event journal keyed by log.

Sequence numbers restart in every event log, so events are keyed by the log
they came from and their sequence number within it. Rows written under v1
are kept under the log id 'v1'.
"""

schema = {
    'version': 2,
    'tables': [
        {
            'name': 'marketplace_events',
            'columns': [
                {'name': 'log_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'seq', 'type': 'INT8', 'nullable': False},
                {'name': 'name', 'type': 'TEXT', 'nullable': False},
                {'name': 'event_time', 'type': 'INT8', 'nullable': False},
                {'name': 'data', 'type': 'JSONB', 'nullable': False, 'default': "'{}'::JSONB"},
                {'name': 'recorded_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'}
            ],
            'primary_key': ['log_id', 'seq'],
            'indexes': [
                {'name': 'idx_marketplace_events_name', 'columns': ['name']},
                {'name': 'idx_marketplace_events_time', 'columns': ['event_time']}
            ]
        }
    ],
    'migrations': [
        "ALTER TABLE marketplace_events ADD COLUMN IF NOT EXISTS log_id TEXT NOT NULL DEFAULT 'v1'",
        'ALTER TABLE marketplace_events ALTER COLUMN log_id DROP DEFAULT',
        'ALTER TABLE marketplace_events DROP CONSTRAINT IF EXISTS marketplace_events_pkey',
        'ALTER TABLE marketplace_events ADD PRIMARY KEY (log_id, seq)'
    ]
}
