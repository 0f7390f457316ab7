import pytest

from stepn.local.supervisor import (ConfigError, CyclicDependencyError, DuplicateServiceError, ServiceGraph,
                                    UnknownDependencyError, UnknownServiceError)


@pytest.fixture
def web_stack(make_service):
    return ServiceGraph([
        make_service("web", deps=["api"]),
        make_service("api", deps=["db", "cache"]),
        make_service("db"),
        make_service("cache"),
        make_service("docs"),
    ])


def test_processing_order_puts_dependencies_first(web_stack):
    order = web_stack.processing_order()
    assert sorted(order) == sorted(web_stack.names)
    for name in order:
        for dep in web_stack.dependencies_of(name):
            assert order.index(dep) < order.index(name)


def test_processing_order_is_deterministic(make_service, web_stack):
    shuffled = ServiceGraph([
        make_service("docs"),
        make_service("cache"),
        make_service("db"),
        make_service("api", deps=["cache", "db"]),
        make_service("web", deps=["api"]),
    ])
    assert shuffled.processing_order() == web_stack.processing_order()
    assert web_stack.processing_order() == ("cache", "db", "api", "docs", "web")


def test_unknown_dependency_is_rejected(make_service):
    with pytest.raises(UnknownDependencyError) as excinfo:
        ServiceGraph([make_service("api", deps=["db"])])
    assert isinstance(excinfo.value, ConfigError)
    assert excinfo.value.service == "api"
    assert excinfo.value.dependency == "db"


def test_cycle_is_rejected(make_service):
    with pytest.raises(CyclicDependencyError) as excinfo:
        ServiceGraph([
            make_service("a", deps=["b"]),
            make_service("b", deps=["c"]),
            make_service("c", deps=["a"]),
        ])
    cycle = excinfo.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}


def test_self_dependency_is_a_cycle(make_service):
    with pytest.raises(CyclicDependencyError) as excinfo:
        ServiceGraph([make_service("a", deps=["a"])])
    assert excinfo.value.cycle == ["a", "a"]


def test_duplicate_names_are_rejected(make_service):
    with pytest.raises(DuplicateServiceError):
        ServiceGraph([make_service("a"), make_service("a", command="echo again")])


def test_dependents(web_stack):
    assert web_stack.dependents_of("db") == ("api",)
    assert web_stack.dependents_of("web") == ()
    assert web_stack.transitive_dependents("db") == {"api", "web"}
    assert web_stack.transitive_dependents("docs") == set()


def test_unknown_service_lookup(web_stack):
    with pytest.raises(UnknownServiceError):
        web_stack.service("nope")
    assert "api" in web_stack
    assert "nope" not in web_stack


def test_resolve_transitive_deps(web_stack):
    assert web_stack.resolve_transitive_deps(["web"]) == {"web", "api", "db", "cache"}
    assert web_stack.resolve_transitive_deps(["db", "docs"]) == {"db", "docs"}
    with pytest.raises(UnknownServiceError):
        web_stack.resolve_transitive_deps(["missing"])


def test_subgraph_keeps_dependencies(web_stack):
    sub = web_stack.subgraph(["api"])
    assert sub.names == {"api", "db", "cache"}
    assert sub.dependencies_of("api") == {"db", "cache"}
    assert sub.dependents_of("db") == ("api",)
