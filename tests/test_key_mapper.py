import pytest

from GraphPorter.config import PrimaryKeyStrategy
from GraphPorter.errors import KeyMappingError
from GraphPorter.key_mapper import PrimaryKeyMapper, infer_target_type


@pytest.mark.parametrize(
    "field,expected",
    [
        ("user_id", "User"),
        ("order_item_id", "OrderItem"),
        ("category_id", "Category"),
        ("categories_id", "Category"),
        ("address_id", "Address"),
        ("name", None),
        ("_id", None),
    ],
)
def test_infer_target_type(field, expected):
    assert infer_target_type(field) == expected


class TestMappings:
    def test_mapping_is_write_once(self):
        mapper = PrimaryKeyMapper()
        mapper.add_mapping("User", 1, 10)
        with pytest.raises(KeyMappingError):
            mapper.add_mapping("User", 1, 11)
        assert mapper.get_mapping("User", 1) == 10

    def test_same_value_twice_is_accepted(self):
        mapper = PrimaryKeyMapper()
        mapper.add_mapping("User", 1, 10)
        mapper.add_mapping("User", 1, 10)
        assert mapper.mapping_count() == 1

    def test_keys_are_scoped_by_type(self):
        mapper = PrimaryKeyMapper()
        mapper.add_mapping("User", 1, 10)
        mapper.add_mapping("Order", 1, 20)
        assert mapper.all_mappings() == {"User": {1: 10}, "Order": {1: 20}}

    def test_missing_original_key_is_ignored(self):
        mapper = PrimaryKeyMapper()
        mapper.add_mapping("User", None, 10)
        assert mapper.mapping_count() == 0

    def test_clear(self):
        mapper = PrimaryKeyMapper()
        mapper.add_mapping("User", 1, 10)
        mapper.clear()
        assert mapper.get_mapping("User", 1) is None

    def test_strategy(self):
        assert PrimaryKeyMapper("preserve_original").should_preserve_primary_key
        assert not PrimaryKeyMapper(PrimaryKeyStrategy.GENERATE_NEW).should_preserve_primary_key


class TestForeignKeys:
    def test_unmapped_value_passes_through(self):
        mapper = PrimaryKeyMapper()
        assert mapper.map_foreign_key_field("user_id", 3) == 3
        assert mapper.map_foreign_key_field("user_id", None) is None

    def test_suffix_inference_without_registry(self):
        mapper = PrimaryKeyMapper()
        mapper.add_mapping("User", 3, 30)
        assert mapper.map_foreign_key_field("user_id", 3) == 30
        assert mapper.rewrite_fields("Order", {"user_id": 3, "total": 3}) == {
            "user_id": 30,
            "total": 3,
        }

    def test_declared_foreign_keys_win_over_the_name(self, registry):
        mapper = PrimaryKeyMapper(registry=registry)
        mapper.add_mapping("Category", 1, 100)
        mapper.add_mapping("Parent", 1, 999)
        fields = mapper.rewrite_fields("Category", {"id": 2, "name": "x", "parent_id": 1})
        assert fields == {"id": 2, "name": "x", "parent_id": 100}
        assert mapper.target_type_for("parent_id", "Category") == "Category"

    def test_primary_key_is_not_rewritten(self, registry):
        mapper = PrimaryKeyMapper(registry=registry)
        mapper.add_mapping("Order", 5, 50)
        fields = mapper.rewrite_fields("Order", {"id": 5, "user_id": 1, "partner_id": 2})
        assert fields["id"] == 5

    def test_polymorphic_key_follows_the_type_field(self, registry):
        mapper = PrimaryKeyMapper(registry=registry)
        mapper.add_mapping("Order", 5, 50)
        mapper.add_mapping("User", 5, 70)
        fields = mapper.rewrite_fields(
            "HistoryRecord", {"id": 1, "recordable_type": "Order", "recordable_id": 5}
        )
        assert fields["recordable_id"] == 50

    def test_input_is_not_mutated(self, registry):
        mapper = PrimaryKeyMapper(registry=registry)
        mapper.add_mapping("User", 1, 10)
        original = {"id": 4, "user_id": 1, "city": "Porto"}
        mapper.rewrite_fields("Address", original)
        assert original["user_id"] == 1
