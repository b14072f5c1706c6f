"""
Region package.

- hierarchy: explicit Kommune -> Fylke -> Country containment table
- resolver: merges global feature toggles with region-scoped overrides
"""
