# pipeline/__init__.py
# ============================================================================
# MCNATION STORE BACKEND — PAYMENT PIPELINE
# ============================================================================
# Agents, wiring, settings and the error taxonomy. Build the whole pipeline
# with `pipeline.container.PaymentPipeline.create(settings)`.
# ============================================================================
