"""
auditparser Test Suite

Test Modules:
- test_detector: Dialect detection from the file header
- test_rows: Header tables, rows and join policy
- test_normal_parser: Nested item record parser
- test_event_parsers: EventBuffer and StateAgentInspector parsers
- test_schema: Column ordering and row rendering
- test_output: Atomic CSV writer
- test_cache: Resumable parse cache
- test_config_loader: Schema configuration documents
- test_utils: File identity, naming and selection helpers
- test_processing: Per-file worker pipeline
- test_parallel: Batch orchestrator
"""
