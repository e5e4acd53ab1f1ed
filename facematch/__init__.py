"""
Face Match

Photo ingestion and face matching for event photography:
- DeepFace (Facenet) for face detection and embeddings
- Pillow for watermarked display derivatives
- PostgreSQL via SQLAlchemy async for photos, embeddings and claims
"""

__version__ = "1.0.0"
