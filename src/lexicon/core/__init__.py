"""Core scan pipeline.

- **fingerprint.py**: content keys for scan deduplication
- **cache.py**: bounded TTL cache (scan-dedup and collection-read instances)
- **retry.py**: retry-with-backoff around unreliable collaborator calls
- **orchestrator.py**: the scan pipeline and the gallery read operations
- **collaborators.py**: collaborator interfaces and the adapter registry
- **adapters/**: Gemini, Imagen, diffusers, local/S3 blob and JSON stores
- **config.py**: configuration using Pydantic Settings (``LEXICON_`` prefix)
- **log_utils.py**: structured logging setup and the logging collaborator
"""
