import pytest

from GraphPorter.catalog import AssociationCatalog
from GraphPorter.dependencies import DependencyGraph, DependencyGraphBuilder, TopologicalResolver
from GraphPorter.errors import CycleError
from GraphPorter.schema import AssociationKind, AssociationSpec, SchemaRegistry


def _belongs_to(name, target, *, optional=False, polymorphic=False):
    return AssociationSpec(
        name=name,
        kind=AssociationKind.TO_ONE,
        target=None if polymorphic else target,
        foreign_key=f"{name}_id",
        polymorphic=polymorphic,
        optional=optional,
        holds_key=True,
        type_field=f"{name}_type" if polymorphic else None,
    )


def _valid_order(order, deps):
    position = {name: i for i, name in enumerate(order)}
    return all(position[dep] < position[name] for name, ds in deps.items() for dep in ds)


class TestBuilder:
    def test_shop_graph(self, catalog):
        graph = DependencyGraphBuilder(catalog).build(
            ["Order", "User", "Partner", "Product", "Photo", "Category", "HistoryRecord"]
        )
        assert graph.dependencies == {
            "Category": set(),
            "HistoryRecord": set(),
            "Order": {"User", "Partner"},
            "Partner": set(),
            "Photo": {"Product"},
            "Product": {"Order"},
            "User": set(),
        }
        assert graph.missing == {}
        assert graph.self_references == set()

    def test_optional_belongs_to_adds_no_edge(self):
        registry = SchemaRegistry()
        registry.declare("User", associations=[_belongs_to("order", "Order", optional=True)])
        registry.declare("Order", associations=[_belongs_to("user", "User")])
        graph = DependencyGraphBuilder(AssociationCatalog(registry)).build({"User", "Order"})
        assert graph.dependencies == {"Order": {"User"}, "User": set()}
        assert TopologicalResolver().resolve(graph) == ["User", "Order"]

    def test_mutual_required_belongs_to_is_a_cycle(self):
        registry = SchemaRegistry()
        registry.declare("User", associations=[_belongs_to("order", "Order")])
        registry.declare("Order", associations=[_belongs_to("user", "User")])
        graph = DependencyGraphBuilder(AssociationCatalog(registry)).build({"User", "Order"})
        assert graph.dependencies == {"Order": {"User"}, "User": {"Order"}}
        with pytest.raises(CycleError) as exc:
            TopologicalResolver().resolve(graph)
        assert sorted(exc.value.cycle) == ["Order", "User"]

    def test_polymorphic_belongs_to_adds_no_edge(self):
        registry = SchemaRegistry()
        registry.declare("Comment", associations=[_belongs_to("subject", None, polymorphic=True)])
        registry.declare("Post")
        graph = DependencyGraphBuilder(AssociationCatalog(registry)).build({"Comment", "Post"})
        assert graph.dependencies == {"Comment": set(), "Post": set()}

    def test_dependencies_outside_the_input_are_reported_as_missing(self, catalog):
        graph = DependencyGraphBuilder(catalog).build({"Product"})
        assert graph.dependencies == {"Product": set()}
        assert graph.missing == {"Product": {"Order"}}

    def test_required_self_reference(self):
        registry = SchemaRegistry()
        registry.declare("Employee", associations=[_belongs_to("manager", "Employee")])
        graph = DependencyGraphBuilder(AssociationCatalog(registry)).build({"Employee"})
        assert graph.self_references == {"Employee"}
        with pytest.raises(CycleError):
            TopologicalResolver().resolve(graph)


class TestResolve:
    def test_dependencies_come_first(self):
        deps = {
            "Photo": {"Product"},
            "Product": {"Order"},
            "Order": {"User", "Partner"},
            "User": set(),
            "Partner": set(),
        }
        order = TopologicalResolver().resolve(deps)
        assert _valid_order(order, deps)
        assert order == ["Partner", "User", "Order", "Product", "Photo"]

    def test_order_does_not_depend_on_insertion_order(self):
        deps = {"C": {"A"}, "B": {"A"}, "A": set(), "D": set()}
        shuffled = dict(reversed(list(deps.items())))
        resolver = TopologicalResolver()
        assert resolver.resolve(deps) == resolver.resolve(shuffled) == ["A", "B", "C", "D"]

    def test_dependency_only_nodes_are_included(self):
        assert TopologicalResolver().resolve({"Order": {"User"}}) == ["User", "Order"]

    def test_accepts_a_dependency_graph(self):
        graph = DependencyGraph(dependencies={"B": {"A"}, "A": set()})
        assert TopologicalResolver().resolve(graph) == ["A", "B"]

    def test_cycle_is_rejected_with_its_path(self):
        deps = {"A": {"B"}, "B": {"A"}, "C": set()}
        with pytest.raises(CycleError) as exc:
            TopologicalResolver().resolve(deps)
        assert sorted(exc.value.cycle) == ["A", "B"]
        assert exc.value.unresolved == {"A", "B"}
        assert "Circular dependency detected" in str(exc.value)

    def test_empty_graph(self):
        assert TopologicalResolver().resolve({}) == []


class TestLevelGroup:
    def test_levels_are_generations(self):
        deps = {
            "Photo": {"Product"},
            "Product": {"Order"},
            "Order": {"User", "Partner"},
            "User": set(),
            "Partner": set(),
        }
        grouping = TopologicalResolver().level_group(deps)
        assert grouping.levels == [["Partner", "User"], ["Order"], ["Product"], ["Photo"]]
        assert grouping.has_cycles is False
        assert grouping.cycles == []

    def test_cycle_leaves_partial_levels(self):
        deps = {"A": {"B"}, "B": {"A"}, "C": {"A"}, "D": set()}
        grouping = TopologicalResolver().level_group(deps)
        assert grouping.levels == [["D"]]
        assert grouping.unresolved == {"A", "B", "C"}
        # C only waits on the cycle; it is not part of it
        assert grouping.cyclic_types == {"A", "B"}
        assert grouping.has_cycles is True


class TestFindCycles:
    def test_acyclic(self):
        assert TopologicalResolver().find_cycles({"A": {"B"}, "B": set()}) == []

    def test_self_loop(self):
        assert TopologicalResolver().find_cycles({"A": {"A"}}) == [["A"]]

    def test_distinct_cycles_are_reported_once(self):
        deps = {"A": {"B"}, "B": {"A"}, "C": {"D"}, "D": {"C"}, "E": {"A"}}
        cycles = TopologicalResolver().find_cycles(deps)
        assert sorted(sorted(c) for c in cycles) == [["A", "B"], ["C", "D"]]

    def test_chord_through_a_finished_type_is_not_listed_separately(self):
        deps = {"A": {"B", "C"}, "B": {"C"}, "C": {"A"}}
        cycles = TopologicalResolver().find_cycles(deps)
        assert cycles == [["A", "B", "C"]]


def test_deletion_order_reverses_creation_order():
    deps = {"Order": {"User"}, "Product": {"Order"}, "User": set()}
    resolver = TopologicalResolver()
    assert resolver.deletion_order(deps) == list(reversed(resolver.resolve(deps)))
