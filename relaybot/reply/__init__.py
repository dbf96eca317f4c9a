"""Reply payloads, followup queue, block coalescing and reply dispatch."""
