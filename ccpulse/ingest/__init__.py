"""File ingestion: content cache, watcher and the read → parse → store pipeline."""
