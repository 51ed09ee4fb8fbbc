"""Competitive pricing-plan extraction.

Modules:
  url_resolver  URL normalisation and SSRF checks
  scraper       static fetch, content segmentation, pricing-page discovery
  toggle        billing-toggle detection and control scoring
  browser       headless-browser billing-mode snapshots
  extractor     LLM prompts and reply parsing
  dedupe        plan merging
  pipeline      PricingPipeline, the public entry points
"""
