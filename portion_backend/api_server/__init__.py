"""
HTTP surface: FastAPI app with /api (dashboard data) and /x402 (payments).
"""
