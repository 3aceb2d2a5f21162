"""
Keepsake backend package.

A FastAPI service for a personal memories site: moments (photos, videos,
poems and notes), a video library, poems, a gallery and home page cards.
Media bytes live in a chunked blob store next to the records, and are
streamed back with byte-range and conditional-GET support.
"""
