"""
Scribeflow - Resilient transcript ingestion and clinical workflow service

A FastAPI-based microservice that ingests speech-to-text fragments from
interchangeable transcription providers, persists them in batches behind
retry and circuit-breaker layers, and generates clinical notes, follow-up
tasks and diagnosis code suggestions once a recording stops.
"""

__version__ = "1.0.0"
__author__ = "numediq"
