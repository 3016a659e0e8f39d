"""
Backend package for the virtual asphalt lab.

This package provides a FastAPI application that hands out quiz questions,
scores answers, stores PDF lab reports and archives final lab results, with
interchangeable state stores (in-memory, SQL, Firestore) and blob storage.
"""
