import pytest

from GraphPorter.catalog import AssociationCatalog
from GraphPorter.config import GraphConfig
from GraphPorter.errors import MissingTypeError, ShapeError
from GraphPorter.schema import AssociationKind, AssociationSpec, SchemaRegistry
from support.shop import Category, Order


class TestReflection:
    def test_every_mapped_class_is_registered(self, registry):
        assert registry.names() == [
            "Address",
            "Category",
            "HistoryRecord",
            "Order",
            "OrderFlag",
            "Partner",
            "Photo",
            "Product",
            "Profile",
            "User",
        ]

    def test_belongs_to_is_a_key_holding_to_one(self, registry):
        spec = registry.resolve_tag("Order").association("user")
        assert spec.kind is AssociationKind.TO_ONE
        assert spec.target == "User"
        assert spec.foreign_key == "user_id"
        assert spec.holds_key is True
        assert spec.optional is False

    def test_nullable_foreign_key_is_optional(self, registry):
        assert registry.resolve_tag("Product").association("category").optional is True
        parent = registry.resolve_tag("Category").association("parent")
        assert parent.target == "Category"
        assert parent.optional is True

    def test_has_many_and_has_one(self, registry):
        user = registry.resolve_tag("User")
        assert user.association("addresses").kind is AssociationKind.TO_MANY
        assert user.association("addresses").foreign_key == "user_id"
        profile = user.association("profile")
        assert profile.kind is AssociationKind.TO_ONE
        assert profile.holds_key is False

    def test_secondary_is_through(self, registry):
        flags = registry.resolve_tag("Order").association("flags")
        assert flags.kind is AssociationKind.TO_MANY_THROUGH
        assert flags.target == "OrderFlag"

    def test_declared_graph_associations(self, registry):
        history = registry.resolve_tag("HistoryRecord")
        recordable = history.association("recordable")
        assert recordable.polymorphic is True
        assert recordable.target is None
        assert history.polymorphic_keys == {"recordable_id": "recordable_type"}
        assert registry.resolve_tag("Order").association("history").target == "HistoryRecord"

    def test_foreign_key_table(self, registry):
        assert registry.resolve_tag("Order").foreign_keys == {
            "user_id": "User",
            "partner_id": "Partner",
        }
        assert registry.resolve_tag("Category").foreign_keys == {"parent_id": "Category"}

    def test_fields_and_primary_key(self, registry):
        order = registry.resolve_tag("Order")
        assert order.primary_key == "id"
        assert {"id", "number", "state", "total", "user_id"} <= set(order.fields)
        assert registry.descriptor_for_model(Order) is order


class TestRegistry:
    def test_unknown_tag(self, registry):
        with pytest.raises(MissingTypeError) as exc:
            registry.resolve_tag("Invoice")
        assert exc.value.type_name == "Invoice"

    @pytest.mark.parametrize("tag", [None, "", 7])
    def test_invalid_tag(self, registry, tag):
        with pytest.raises(MissingTypeError):
            registry.resolve_tag(tag)

    def test_declare_without_model(self):
        registry = SchemaRegistry()
        descriptor = registry.declare(
            "Invoice",
            fields=("id", "customer_id"),
            associations=[
                AssociationSpec(
                    "customer",
                    AssociationKind.TO_ONE,
                    "Customer",
                    foreign_key="customer_id",
                    holds_key=True,
                )
            ],
        )
        assert descriptor.model is None
        assert descriptor.foreign_keys == {"customer_id": "Customer"}
        assert "Invoice" in registry
        assert len(registry) == 1

    def test_duplicate_association_is_rejected(self, registry):
        spec = AssociationSpec("user", AssociationKind.TO_ONE, "User")
        with pytest.raises(ShapeError):
            registry.add_association("Order", spec)


class TestCatalog:
    def test_associations_follow_declaration(self, catalog):
        names = [e.name for e in catalog.associations_of("Order")]
        assert set(names) == {"user", "partner", "products", "flags", "history"}
        assert names[-1] == "history"

    def test_relationship_filter(self, registry):
        catalog = AssociationCatalog(registry, GraphConfig(excluded_relationships={"products"}))
        assert "products" not in [e.name for e in catalog.associations_of("Order")]

    def test_model_filter_drops_edges_to_excluded_types(self, registry):
        catalog = AssociationCatalog(registry, GraphConfig(excluded_models={"Partner"}))
        assert "partner" not in [e.name for e in catalog.associations_of("Order")]

    def test_dependency_edges_are_required_belongs_to_only(self, catalog):
        assert {e.to_type for e in catalog.dependency_edges("Order")} == {"User", "Partner"}
        assert catalog.dependency_edges("Category") == []
        assert catalog.dependency_edges("HistoryRecord") == []
        assert catalog.dependency_edges("User") == []

    def test_unknown_target_is_skipped_or_raised(self):
        registry = SchemaRegistry()
        registry.declare(
            "Invoice",
            associations=[AssociationSpec("customer", AssociationKind.TO_ONE, "Customer")],
        )
        lenient = AssociationCatalog(registry, GraphConfig(skip_missing_models=True))
        assert lenient.associations_of("Invoice") == []
        strict = AssociationCatalog(registry, GraphConfig(skip_missing_models=False))
        with pytest.raises(MissingTypeError):
            strict.associations_of("Invoice")

    def test_related_follows_mapped_and_declared_edges(self, catalog, shop):
        order = shop["order"]
        edges = {e.name: e for e in catalog.associations_of("Order")}
        assert catalog.related(order, edges["user"]) == [shop["user"]]
        assert catalog.related(order, edges["products"]) == [shop["novel"], shop["poems"]]
        assert catalog.related(order, edges["history"]) == [shop["history"]]

    def test_related_resolves_polymorphic_target(self, catalog, shop):
        (edge,) = catalog.associations_of("HistoryRecord")
        assert catalog.related(shop["history"], edge) == [shop["order"]]

    def test_descriptor_for_rejects_unmapped(self, catalog):
        with pytest.raises(ShapeError):
            catalog.descriptor_for(object())
        with pytest.raises(ShapeError):
            catalog.descriptor_for(None)
        assert catalog.descriptor_for(Category(name="x")).name == "Category"
