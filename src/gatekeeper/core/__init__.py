"""
Core components: stores, computation cache, rate limiter, fan-out logger.
"""
