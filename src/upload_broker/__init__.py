"""upload_broker — Credential Broker: SigV4 presigning and multipart uploads."""
