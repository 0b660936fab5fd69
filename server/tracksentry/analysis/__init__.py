"""Per-request analysis engines.

Context detection, risk scoring, policy resolution and tracker
identity resolution run on the enforcement path.  Fingerprint
detection, pattern analysis and insights are fed from it but
never block it.
"""
