"""Update ingestion: long polling, normalization and cursor bookkeeping."""
