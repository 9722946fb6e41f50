"""
SEO Content Pipeline

Step-by-step orchestration of long-form SEO articles: SERP analysis, AI
planning, block-by-block writing, media, SEO enrichment and WordPress
publishing, driven by an article status state machine.

Usage:
    from seo_pipeline.step_executor import get_executor

    executor = get_executor()
    result = await executor.execute_step(article_id, "analyze")
"""

__version__ = "1.0.0"
