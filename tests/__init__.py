"""
Iris Workflow Test Suite.

Test modules:
- test_state: GenerationState and StateStore
- test_validation: Precondition validator
- test_dispatcher: Per-channel task dispatch
- test_orchestrator: Stage machine end to end
- test_enrichment: Draft, media and rewrite steps
- test_article_html: Chapter HTML helpers
- test_json_parser: Lenient JSON extraction
- test_sql_persistence / test_openai_generation: Concrete collaborators
- test_config, test_logging: Ambient configuration
"""
