"""Transaction ingestion: query strategies, concurrent fetching, the transaction store."""
