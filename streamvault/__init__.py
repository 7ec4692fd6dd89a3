"""streamvault: chunked video ingestion, HLS packaging and watermarked playback."""

__version__ = "1.0.0"
