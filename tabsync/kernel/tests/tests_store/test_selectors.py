"""
tabsync Selectors -- Subscription and Memoization Tests

Covers:
  - select() evaluates immediately without calling back
  - callbacks fire only on change (identity, or value for scalars)
  - registration order
  - unsubscribe, including from inside a callback
  - create_selector keeps derived identity stable
  - named selectors
"""

from tabsync.kernel import actions, selectors
from tabsync.kernel.selectors import create_selector, value_changed


class TestValueChanged:
    def test_scalars_compare_by_value(self):
        assert not value_changed("dark", "da" + "rk")
        assert value_changed(1, 2)
        assert not value_changed(None, None)

    def test_containers_compare_by_identity(self):
        a = {"x": 1}
        assert not value_changed(a, a)
        assert value_changed({"x": 1}, {"x": 1})

    def test_type_change_is_a_change(self):
        assert value_changed(1, True)
        assert value_changed(0, None)


class TestSubscriptions:
    def test_no_callback_on_registration(self, store):
        calls = []
        store.select(selectors.get_theme, lambda new, old: calls.append((new, old)))
        assert calls == []

    def test_fires_only_when_selected_slice_changes(self, store):
        calls = []
        store.select(selectors.get_items("clients"), lambda new, old: calls.append(len(new)))

        store.dispatch(actions.set_theme("dark"))
        store.dispatch(actions.create_record("clients", {"id": "c1"}))
        store.dispatch(actions.toggle_sidebar())

        assert calls == [1]

    def test_same_scalar_value_does_not_fire(self, store):
        calls = []
        store.select(selectors.get_theme, lambda new, old: calls.append((new, old)))

        store.dispatch(actions.set_theme("dark"))
        store.dispatch(actions.set_theme("dark"))

        assert calls == [("dark", "default")]

    def test_registration_order(self, store):
        order = []
        store.select(selectors.get_active_tab, lambda new, old: order.append("first"))
        store.select(selectors.get_active_tab, lambda new, old: order.append("second"))

        store.dispatch(actions.set_active_tab("tasks"))

        assert order == ["first", "second"]

    def test_unsubscribe(self, store):
        calls = []
        unsubscribe = store.select(selectors.is_sidebar_collapsed, lambda new, old: calls.append(new))
        store.dispatch(actions.toggle_sidebar())
        unsubscribe()
        store.dispatch(actions.toggle_sidebar())
        assert calls == [True]

    def test_unsubscribe_other_from_callback(self, store):
        calls = []
        handles = {}

        def first(new, old):
            calls.append("first")
            handles["second"]()

        store.select(selectors.get_theme, first)
        handles["second"] = store.select(selectors.get_theme, lambda new, old: calls.append("second"))

        store.dispatch(actions.set_theme("dark"))

        assert calls == ["first"]


class TestCreateSelector:
    def test_derived_value_keeps_identity_until_input_changes(self, store):
        optimistic = selectors.get_optimistic_items("clients")

        store.dispatch(actions.create_record("clients", {"id": "c1", "_optimistic": True}, optimistic=True))
        first = optimistic(store.get_state())
        store.dispatch(actions.set_theme("dark"))
        second = optimistic(store.get_state())

        assert first == [{"id": "c1", "_optimistic": True}]
        assert second is first

    def test_recomputes_when_input_changes(self):
        calls = []
        total = create_selector(
            lambda s: s["a"],
            lambda s: s["b"],
            combiner=lambda a, b: calls.append(1) or a + b,
        )
        assert total({"a": 1, "b": 2}) == 3
        assert total({"a": 1, "b": 2}) == 3
        assert total({"a": 5, "b": 2}) == 7
        assert len(calls) == 2

    def test_derived_subscription_does_not_refire(self, store):
        calls = []
        store.select(selectors.get_optimistic_items("tasks"), lambda new, old: calls.append(new))

        store.dispatch(actions.set_theme("dark"))
        store.dispatch(actions.create_record("tasks", {"id": "t1", "_optimistic": True}))

        assert calls == [[{"id": "t1", "_optimistic": True}]]


class TestNamedSelectors:
    def test_user_selectors(self, store):
        store.dispatch(actions.login({"id": "u1"}, ["read"]))
        state = store.get_state()
        assert selectors.get_current_user(state) == {"id": "u1"}
        assert selectors.is_authenticated(state) is True
        assert selectors.get_user_permissions(state) == ["read"]
        assert selectors.get_user_preferences(state) == {}

    def test_cache_validity(self, store, clock):
        store.dispatch(actions.set_cache("k", [1], ttl=100))
        state = store.get_state()
        assert selectors.get_cache_value("k")(state) == [1]
        assert selectors.is_cache_valid("k", clock.now + 99)(state) is True
        assert selectors.is_cache_valid("k", clock.now + 100)(state) is False
        assert selectors.is_cache_valid("missing", clock.now)(state) is False

    def test_entity_and_sync_selectors(self, store):
        store.dispatch(actions.load_start("projects"))
        state = store.get_state()
        assert selectors.is_loading("projects")(state) is True
        assert selectors.get_error("projects")(state) is None
        assert selectors.get_selected("projects")(state) is None
        assert selectors.get_conflicts(state) == []
        assert selectors.get_last_sync("projects")(state) is None
