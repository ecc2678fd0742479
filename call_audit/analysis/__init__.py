"""AI step analysis: prompts, model client, output repair, orchestration.

WHY: Judging each audit step is delegated to a language model. This
package owns everything between the rendered timeline and a validated,
immutable step result: the prompt, the HTTP call, the repair of near-miss
JSON, retries, bounded fan-out, and post-analysis citation checks.

HOW: prompts.py builds the text, client.py sends it and parses the reply
(after repair.py), models.py validates it, orchestrator.py retries and
fans out, evidence.py checks citations against the timeline.

RULES:
- The response schema in models.py is the contract with the model
- A failed step becomes StepAnalysisFailure data, never a run abort
"""
