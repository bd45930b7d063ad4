"""
Recommendation engine: turns scores and allocation gaps into a per-user
split of the monthly contribution.

Modules
-------
allocator : AssetContext + allocation gaps, priority policies,
            distribute_capital() and explanations. Pure functions, no DB.
generator : RecommendationGenerator. Loads holdings, scores and classes,
            calls the allocator and persists the recommendation.
"""
