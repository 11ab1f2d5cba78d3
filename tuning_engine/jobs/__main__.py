"""
Entry point for running the reconciler via python -m tuning_engine.jobs

Usage:
    python -m tuning_engine.jobs
    python -m tuning_engine.jobs --redis-url redis://localhost:6379 --workers 8
"""

from tuning_engine.jobs.reconciler import main

if __name__ == "__main__":
    main()
