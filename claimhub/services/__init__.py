"""
Services Layer for Claims Processing.

Claim store, internal rules engine, external payer gateway, tracking and
the claims workflow service. Import from the submodules directly.
"""
