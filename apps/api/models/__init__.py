"""Models package."""

from .generated_post import GeneratedPost
from .post_feedback import PostFeedback
from .product_performance import ProductPerformance
from .style_performance import StylePerformance
