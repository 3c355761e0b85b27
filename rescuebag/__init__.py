"""
RescueBag — order lifecycle and QR redemption service for surplus-food packs.
"""
__version__ = "1.0.0"
