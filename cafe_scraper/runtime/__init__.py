"""Pure job-runtime pieces: models, post filters and deduplication."""
