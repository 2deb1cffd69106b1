"""
Pipeline services: debounce coordinator, expiry listener, aggregation worker
"""
