# =============================================================================
# Engine Package: Grounded Reasoning & Multi-Expert Deliberation
# =============================================================================
#   - decision_tree.py: Step-bounded decision tree evaluation
#   - tree_graph.py: Answer keys and the tree <-> visual graph transform
#   - citation.py: [Source N] resolution, phantom stripping, confidence
#   - hallucination_guard.py: Refusal policy over citation results
#   - context.py: Source and decision-path prompt context
#   - query_pipeline.py: LangGraph single-expert answer pipeline
#   - collaboration.py: Debate / consensus / review orchestration
#   - review.py: Segmenting and batched, bounded-concurrency review
#   - events.py: Typed progress events and SSE framing
#   - deadline.py: Whole-pipeline timeouts for results and streams
#   - deps.py: The collaborator bundle every pipeline runs against
#   - errors.py, types.py: Shared exceptions and result models
# =============================================================================
