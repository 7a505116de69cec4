#!/usr/bin/env python3
"""
Quick runner for Scan Review Service
====================================

Usage:
    python -m scan_review.run
"""

import uvicorn

if __name__ == "__main__":
    print("Starting Scan Review Service...")
    print("API docs: http://localhost:8000/docs")
    print("Health:   http://localhost:8000/health")
    print()

    uvicorn.run(
        "scan_review.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
