"""Digital ticket issuance and gate redemption service."""
