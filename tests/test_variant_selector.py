# -*- coding: utf-8 -*-
"""
Incentra - Unit tests for variant selection
"""

from app.modules.plan_schema import Variant
from app.modules.variant_selector import is_eligible, select_variant


class TestVariantSelector:
    """Eligibility-gated variants"""

    def setup_method(self):
        self.variants = [
            Variant(name='Managers', eligibility={'role': 'Manager'}, components=[]),
            Variant(name='Flagship Reps', eligibility={'role': 'rep', 'store_type': ['flagship', 'mall']},
                    components=[]),
            Variant(name='Everyone', eligibility={}, components=[]),
        ]

    def test_equality_is_case_insensitive(self):
        assert is_eligible({'role': 'Manager'}, {'role': ' manager '})

    def test_membership(self):
        assert is_eligible({'store_type': ['flagship', 'mall']}, {'store_type': 'Mall'})
        assert not is_eligible({'store_type': ['flagship', 'mall']}, {'store_type': 'outlet'})

    def test_missing_attribute_not_eligible(self):
        assert not is_eligible({'role': 'rep'}, {})

    def test_single_match_no_flag(self):
        selection = select_variant('e1', {'role': 'rep', 'store_type': 'outlet'}, self.variants[:2] + [
            Variant(name='Outlet', eligibility={'store_type': 'outlet'}, components=[])])
        assert selection.variant.name == 'Outlet'
        assert selection.flags == []

    def test_multiple_matches_first_wins_with_flag(self):
        selection = select_variant('e1', {'role': 'manager'}, self.variants)
        assert selection.variant.name == 'Managers'
        assert selection.matched == ['Managers', 'Everyone']
        assert selection.flags == ['ambiguous_selection']

    def test_no_match_falls_back_to_first(self):
        selection = select_variant('e1', {'role': 'rep'}, self.variants[:2])
        assert selection.variant.name == 'Managers'
        assert selection.flags == ['ambiguous_selection']
        assert 'defaulted' in selection.reason
