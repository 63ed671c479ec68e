"""Roadster: road damage detection intake and geospatial reporting.

One-liner API::

    import roadster

    roadster.detect(image_b64, model_id="ws/potholes", model_version="2")
    roadster.detect(data_url, location={"latitude": -6.2, "longitude": 106.8}, store=store)
"""

__version__ = "0.1.0"

from roadster.api import InferenceIntake, IntakeResult, detect

__all__ = ["detect", "InferenceIntake", "IntakeResult", "__version__"]
