"""
Pagination Conformance Tests

INVARIANT: Enumeration is bounded and complete.

    ∀ page: len(page) <= limit <= MAX_PAGE_SIZE
    Walking list_page from offset 0 by next_offset visits ids 1..n exactly once, in order.
    Walking find_listings(pred) by next_offset yields exactly {i : pred(i)}, in order.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from marketplace import Category, MAX_PAGE_SIZE, ValidationError

from tests.helpers import make_world, create_listing


CATEGORIES = list(Category)


def _populate(registry, categories):
    for category in categories:
        create_listing(registry, category=category)


class TestPaginationProperties:

    @given(st.integers(1, 60), st.integers(1, MAX_PAGE_SIZE))
    @settings(max_examples=50, deadline=None)
    def test_list_page_walk_covers_every_listing_once(self, count, limit):
        _, _, registry = make_world()
        _populate(registry, [Category.OTHER] * count)

        seen = []
        offset = 0
        while offset is not None:
            page = registry.list_page(limit, offset)
            assert len(page) <= limit
            assert page.total == count
            seen.extend(page.listing_ids)
            offset = page.next_offset

        assert seen == list(range(1, count + 1))

    @given(st.lists(st.sampled_from(CATEGORIES), min_size=0, max_size=60), st.integers(1, 10))
    @settings(max_examples=50, deadline=None)
    def test_filtered_walk_matches_full_filter(self, categories, limit):
        _, _, registry = make_world()
        _populate(registry, categories)

        seen = []
        offset = 0
        while offset is not None:
            page = registry.listings_by_category(Category.BOOKS, limit=limit, offset=offset)
            assert len(page) <= limit
            seen.extend(page.listing_ids)
            offset = page.next_offset

        expected = [i + 1 for i, c in enumerate(categories) if c == Category.BOOKS]
        assert seen == expected


class TestPaginationBounds:

    def test_limit_above_max_rejected(self, registry):
        create_listing(registry)
        with pytest.raises(ValidationError):
            registry.list_page(MAX_PAGE_SIZE + 1, 0)
        with pytest.raises(ValidationError):
            registry.find_listings(lambda info: True, limit=MAX_PAGE_SIZE + 1)

    def test_max_page_returned_in_full(self, registry):
        for _ in range(MAX_PAGE_SIZE + 5):
            create_listing(registry)
        page = registry.list_page(MAX_PAGE_SIZE, 0)
        assert len(page) == MAX_PAGE_SIZE
        assert page.next_offset == MAX_PAGE_SIZE

    def test_find_offset_past_end_rejected(self, registry):
        create_listing(registry)
        with pytest.raises(ValidationError):
            registry.find_listings(lambda info: True, offset=2)
