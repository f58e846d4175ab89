"""
DocSeal Backend - REST API for sealing uploaded PDF documents

This package provides a FastAPI-based web service that runs every uploaded
PDF through a fixed sequence of security and metadata transformations and
serves the processed artifact back:

- Upload admission (type, size and per-client rate checks)
- Sanitizing through Ghostscript at upload time
- Metadata editing in memory, written with ExifTool at finalize time
- AES-256 permission encryption through qpdf with a throwaway owner password
- Document hashing and download of the sealed file
- Automatic expiry of documents after a configurable age

Documents live only in memory and in a sandbox directory; nothing survives a
restart.

Key Components:
    - main: FastAPI application factory and HTTP endpoints
    - pipeline: Per-document state machine (sanitize, metadata, encrypt, hash)
    - registry: In-memory record store with per-record leases
    - upload_gate: Upload admission control
    - process_runner: Subprocess execution with timeouts
    - path_guard: Sandbox path confinement
    - hashing: Streaming digests over content and metadata
    - cleanup: Periodic expiry sweep
    - configuration: OmegaConf defaults merged with environment overrides

Usage:
    Run the API server with:
        uvicorn docseal_backend.main:app --host 0.0.0.0 --port 8000
"""
