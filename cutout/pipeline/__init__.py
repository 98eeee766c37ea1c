"""
Background Removal Pipeline

1. Intake - validation and compression of uploads
2. Transform - background removal with retry and backoff
3. Batch - wave-based scheduling under a concurrency cap
"""
