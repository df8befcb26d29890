"""Concrete collaborator adapters.

Importing this package registers every built-in adapter with
:data:`lexicon.core.collaborators.adapter_registry`.  Vendor SDKs (boto3,
google-genai, torch, diffusers) are imported lazily by the adapters that
need them, so registering them is cheap.
"""

from lexicon.core.adapters.diffusers_synth import DiffusersSynthesizer
from lexicon.core.adapters.gemini import GeminiAnalyzer, GeminiSpeech
from lexicon.core.adapters.imagen import ImagenSynthesizer
from lexicon.core.adapters.json_store import JsonDocumentStore
from lexicon.core.adapters.local_blob import LocalBlobStore
from lexicon.core.adapters.s3_blob import S3BlobStore

__all__ = [
    "DiffusersSynthesizer",
    "GeminiAnalyzer",
    "GeminiSpeech",
    "ImagenSynthesizer",
    "JsonDocumentStore",
    "LocalBlobStore",
    "S3BlobStore",
]
