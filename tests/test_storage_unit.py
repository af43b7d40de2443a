from datetime import date

import pytest

from storefront.storage.common import ListQuery, is_valid_id, new_id, paginate
from storefront.storage.errors import ConstraintViolation
from storefront.storage.memory import MemoryStore
from storefront.storage.models import CartItem


@pytest.fixture
def store():
    return MemoryStore()


def _user(store, account="a@example.com", name="Alice"):
    return store.create_user(account, "hash", name, "0912345678")


def _product(store, name="Mug", price=100.0, sell=True, description="ceramic"):
    return store.create_product(name, price, ["https://img/1.png"], description, "classic", sell=sell)


class TestUsers:
    def test_create_and_lookup(self, store):
        user = _user(store)

        assert is_valid_id(user.id)
        assert user.role == "user"
        assert user.cart == [] and user.tokens == []
        assert store.get_user(user.id).account == "a@example.com"
        assert store.get_user_by_account("a@example.com").id == user.id
        assert store.get_user_by_account("b@example.com") is None

    def test_duplicate_account_is_rejected(self, store):
        _user(store)

        with pytest.raises(ConstraintViolation) as excinfo:
            _user(store)
        assert excinfo.value.detail == {"field": "account"}

    def test_returned_objects_are_copies(self, store):
        user = _user(store)
        user.name = "Mutated"
        user.tokens.append("leak")

        stored = store.get_user(user.id)
        assert stored.name == "Alice"
        assert stored.tokens == []

    def test_update_user_rejects_unknown_fields(self, store):
        user = _user(store)

        with pytest.raises(ValueError):
            store.update_user(user.id, account="other@example.com")

    def test_update_missing_user(self, store):
        assert store.update_user(new_id(), name="x") is None
        assert store.delete_user(new_id()) is False

    def test_list_users_search_and_total(self, store):
        _user(store, "alice@example.com", "Alice")
        _user(store, "bob@example.com", "Bob")
        _user(store, "carol@example.com", "Carol")

        page = store.list_users(ListQuery(search="BOB"))

        assert [u.account for u in page.items] == ["bob@example.com"]
        # total counts every user, not only search hits
        assert page.total == 3

    def test_search_is_literal(self, store):
        _user(store, "dot@example.com", "a.b")
        _user(store, "star@example.com", "axb")

        page = store.list_users(ListQuery(search="a.b"))

        assert [u.name for u in page.items] == ["a.b"]


class TestTokens:
    def test_push_replace_pull(self, store):
        user = _user(store)
        store.push_token(user.id, "t1")
        store.push_token(user.id, "t2")

        assert store.get_user_by_token(user.id, "t1") is not None
        assert store.replace_token(user.id, "t1", "t3") is True
        assert store.get_user(user.id).tokens == ["t3", "t2"]
        assert store.get_user_by_token(user.id, "t1") is None

        assert store.pull_token(user.id, "t2") is True
        assert store.get_user(user.id).tokens == ["t3"]

    def test_replace_unknown_token(self, store):
        user = _user(store)

        assert store.replace_token(user.id, "missing", "new") is False
        assert store.pull_token(user.id, "missing") is False
        assert store.push_token(new_id(), "t") is False


class TestProducts:
    def test_public_listing_hides_unsold(self, store):
        _product(store, "Mug")
        _product(store, "Plate", sell=False)

        public = store.list_products(ListQuery(), sell_only=True)
        admin = store.list_products(ListQuery(), sell_only=False)

        assert [p.name for p in public.items] == ["Mug"]
        assert public.total == 1
        assert admin.total == 2

    def test_sort_and_pagination(self, store):
        for index, price in enumerate([30.0, 10.0, 20.0]):
            _product(store, f"P{index}", price=price)

        first = store.list_products(ListQuery(sort_by="price", sort_order=1, limit=2, page=1))
        second = store.list_products(ListQuery(sort_by="price", sort_order=1, limit=2, page=2))
        everything = store.list_products(ListQuery(sort_by="price", sort_order=-1, limit=None))

        assert [p.price for p in first.items] == [10.0, 20.0]
        assert [p.price for p in second.items] == [30.0]
        assert [p.price for p in everything.items] == [30.0, 20.0, 10.0]

    def test_search_matches_description(self, store):
        _product(store, "Mug", description="Blue glaze")
        _product(store, "Plate", description="plain")

        page = store.list_products(ListQuery(search="glaze"))

        assert [p.name for p in page.items] == ["Mug"]

    def test_get_products_skips_missing(self, store):
        product = _product(store)

        found = store.get_products([product.id, new_id(), product.id])

        assert list(found) == [product.id]

    def test_update_product(self, store):
        product = _product(store)

        updated = store.update_product(product.id, price=55.5, sell=False)

        assert updated.price == 55.5
        assert updated.sell is False
        assert updated.updated_at >= product.updated_at
        with pytest.raises(ValueError):
            store.update_product(product.id, id="x")


class TestCartAndOrders:
    def test_set_cart(self, store):
        user = _user(store)
        product = _product(store)

        updated = store.set_cart(user.id, [CartItem(product.id, 3)])

        assert updated.cart_quantity == 3
        assert store.get_user(user.id).cart == [CartItem(product.id, 3)]
        assert store.set_cart(new_id(), []) is None

    def test_orders_filtered_by_user(self, store):
        alice = _user(store, "alice@example.com")
        bob = _user(store, "bob@example.com")
        product = _product(store)
        for owner in (alice, alice, bob):
            store.create_order(
                owner.id,
                [CartItem(product.id, 1)],
                date=date(2024, 1, 1),
                time="10:00",
                name="Recipient",
                phone="0912345678",
            )

        assert store.list_orders(ListQuery(), user_id=alice.id).total == 2
        assert store.list_orders(ListQuery(), user_id=bob.id).total == 1
        assert store.list_orders(ListQuery()).total == 3


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        product = _product(store)
        store.push_token(user.id, "tok")
        store.set_cart(user.id, [CartItem(product.id, 2)])
        order = store.create_order(
            user.id,
            [CartItem(product.id, 2)],
            date=date(2024, 1, 1),
            time="12:00",
            name="Alice",
            phone="0912345678",
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))

        reloaded_user = reloaded.get_user(user.id)
        assert reloaded_user.tokens == ["tok"]
        assert reloaded_user.cart == [CartItem(product.id, 2)]
        assert reloaded.get_product(product.id).name == "Mug"
        orders = reloaded.list_orders(ListQuery())
        assert [o.id for o in orders.items] == [order.id]
        assert orders.items[0].date == date(2024, 1, 1)
        assert (tmp_path / "snapshot.json").exists()


def test_paginate_places_none_first_ascending():
    class Row:
        def __init__(self, value):
            self.created_at = value

    rows = [Row(2), Row(None), Row(1)]

    ordered = paginate(rows, ListQuery(sort_order=1, limit=None))

    assert [r.created_at for r in ordered] == [None, 1, 2]


def test_list_query_skip():
    assert ListQuery(limit=20, page=3).skip == 40
    assert ListQuery(limit=None, page=5).skip == 0
