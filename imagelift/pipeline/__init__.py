"""
Enhancement Pipeline

Sequential two-tier render pipeline:
1. 4K - 3840px wide derivative
2. 8K - 7680px wide derivative
"""
