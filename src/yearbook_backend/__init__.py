"""
Yearbook Backend - page lifecycle service for school yearbooks

This package provides a FastAPI-based web service that manages the pages of
paginated yearbooks stored in S3. It enables:

- Page ingestion from single images or multi-page PDFs
- Draft staging with atomic publish and discard
- Access-controlled delivery with signed and watermarked URLs
- Cascade cleanup of PDF sources once their pages are gone

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - service: Facade coordinating every component below
    - object_store: S3 uploads, PDF rasterization and URL signing
    - ingestion: Turns uploads into draft pages
    - drafts: Draft/publish state machine
    - delivery: Access rules and delivery URLs
    - cleanup: Batch source garbage collection
    - database: SQLite metadata store
    - access_registry: Actor and purchase records
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn yearbook_backend.main:app --reload --host 0.0.0.0 --port 8000
"""
