from __future__ import annotations

import re
from typing import Callable, List, Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from storefront.api.schemas import (
    AdminUserUpdateRequest,
    AdminUserView,
    CartEditRequest,
    CartLineOut,
    CartQuantityResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    OrderCreateRequest,
    OrderOut,
    OrderOwner,
    PageOut,
    ProductOut,
    SelfUpdateRequest,
    SignupRequest,
    TokenResponse,
    UserProfile,
    ok,
)
from storefront.service.auth import AuthContext
from storefront.service.cart import CartLine
from storefront.service.orders import OrderView
from storefront.service.runtime import check_rate_limit, get_runtime
from storefront.service.uploads import ImageFile
from storefront.storage.common import (
    ORDER_SORT_FIELDS,
    PRODUCT_SORT_FIELDS,
    USER_SORT_FIELDS,
    ListQuery,
)
from storefront.storage.models import Category

router = APIRouter()

_bearer = HTTPBearer(auto_error=False)
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")
# keeps (page - 1) * itemsPerPage well inside a Mongo int64 skip
MAX_PAGE = 1_000_000


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {"error": {"code": code, "message": message}}
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    decision = await check_rate_limit(runtime, key, limit, window_seconds)
    if not decision.allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(max(decision.retry_after, 1))},
        )


async def get_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> AuthContext:
    runtime = get_runtime()
    token = credentials.credentials if credentials else None
    return await runtime.auth.authenticate(token, request.url.path)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    return get_runtime().auth.require_admin(principal)


def _list_query(allowed_sort_fields: frozenset) -> Callable[..., ListQuery]:
    """Build a dependency that parses the camelCase listing query string."""

    def dependency(
        sort_by: str = Query("createdAt", alias="sortBy", max_length=32),
        sort_order: int = Query(-1, alias="sortOrder"),
        items_per_page: Optional[int] = Query(None, alias="itemsPerPage"),
        page: int = Query(1, ge=1, le=MAX_PAGE),
        search: Optional[str] = Query(None, max_length=100),
    ) -> ListQuery:
        settings = get_runtime().settings
        field = _CAMEL_BOUNDARY.sub("_", sort_by).lower()
        if field not in allowed_sort_fields:
            raise _http_error(
                "validation_error",
                f"cannot sort by {sort_by}",
                status_code=400,
                details={"allowed": sorted(allowed_sort_fields)},
            )
        if sort_order not in (1, -1):
            raise _http_error("validation_error", "sortOrder must be 1 or -1", status_code=400)
        if items_per_page is None:
            limit: Optional[int] = settings.default_page_size
        elif items_per_page == -1:
            limit = None
        elif 1 <= items_per_page <= settings.max_page_size:
            limit = items_per_page
        else:
            raise _http_error(
                "validation_error",
                f"itemsPerPage must be -1 or between 1 and {settings.max_page_size}",
                status_code=400,
            )
        return ListQuery(
            sort_by=field,
            sort_order=sort_order,
            limit=limit,
            page=page,
            search=search.strip() if search and search.strip() else None,
        )

    return dependency


async def _read_image(upload: UploadFile, max_bytes: int) -> ImageFile:
    # one extra byte is enough to detect an oversized file
    data = await upload.read(max_bytes + 1)
    return ImageFile(
        filename=upload.filename or "upload",
        content_type=upload.content_type,
        data=data,
    )


def _cart_lines_out(lines: List[CartLine]) -> List[CartLineOut]:
    return [
        CartLineOut(
            product_id=line.item.product_id,
            quantity=line.item.quantity,
            product=ProductOut.from_product(line.product) if line.product else None,
        )
        for line in lines
    ]


def _order_out(view: OrderView) -> OrderOut:
    order = view.order
    owner = None
    if view.user is not None:
        owner = OrderOwner(id=view.user.id, account=view.user.account, name=view.user.name)
    return OrderOut(
        id=order.id,
        user_id=order.user_id,
        cart=_cart_lines_out(view.lines),
        date=order.date,
        time=order.time,
        name=order.name,
        phone=order.phone,
        created_at=order.created_at,
        user=owner,
    )


# -- users ------------------------------------------------------------------


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def signup(body: SignupRequest, request: Request):
    runtime = get_runtime()
    client_ip = request.client.host if request.client else "unknown"
    await _enforce_rate_limit(
        runtime, f"signup:{client_ip}", runtime.settings.signup_rate_limit_per_minute, 60
    )
    user = await runtime.auth.signup(
        account=body.account, password=body.password, name=body.name, phone=body.phone
    )
    return ok(UserProfile.from_user(user), "account created")


@router.post("/users/login", response_model=Envelope, tags=["users"])
async def login(body: LoginRequest):
    """Check credentials and append a new 14-day token to the user's token list.

    Raises:
        400: account or password missing
        401: unknown account or wrong password
        429: too many attempts for this account
    """
    runtime = get_runtime()
    if body.account:
        await _enforce_rate_limit(
            runtime,
            f"login:{body.account}",
            runtime.settings.login_rate_limit_per_minute,
            60,
        )
    user, token = await runtime.auth.login(body.account, body.password)
    profile = UserProfile.from_user(user)
    return ok(LoginResponse(**profile.model_dump(), token=token), "logged in")


@router.patch("/users/extend", response_model=Envelope, tags=["users"])
async def extend(principal: AuthContext = Depends(get_user)):
    token = await get_runtime().auth.extend(principal)
    return ok(TokenResponse(token=token), "token extended")


@router.delete("/users/logout", response_model=Envelope, tags=["users"])
async def logout(principal: AuthContext = Depends(get_user)):
    await get_runtime().auth.logout(principal)
    return ok(message="logged out")


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    return ok(UserProfile.from_user(principal.user))


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_profile(body: SelfUpdateRequest, principal: AuthContext = Depends(get_user)):
    user = get_runtime().users.update_self(
        principal.user_id, name=body.name, phone=body.phone, password=body.password
    )
    return ok(UserProfile.from_user(user), "profile updated")


@router.patch("/users/me/avatar", response_model=Envelope, tags=["users"])
async def update_avatar(
    image: UploadFile = File(...),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    upload = await _read_image(image, runtime.settings.max_upload_bytes)
    user = await runtime.users.set_avatar(principal.user_id, upload)
    return ok(UserProfile.from_user(user), "avatar updated")


@router.get("/users/cart", response_model=Envelope, tags=["cart"])
async def get_cart(principal: AuthContext = Depends(get_user)):
    lines = get_runtime().cart.get(principal.user_id)
    return ok(_cart_lines_out(lines))


@router.patch("/users/cart", response_model=Envelope, tags=["cart"])
async def edit_cart(body: CartEditRequest, principal: AuthContext = Depends(get_user)):
    total = get_runtime().cart.edit(principal.user_id, body.product, body.quantity)
    return ok(CartQuantityResponse(cart_quantity=total), "cart updated")


@router.get("/users/all", response_model=Envelope, tags=["admin"])
async def list_users(
    query: ListQuery = Depends(_list_query(USER_SORT_FIELDS)),
    principal: AuthContext = Depends(get_admin_user),
):
    page = get_runtime().users.list_users(query)
    return ok(PageOut(data=[AdminUserView.from_user(u) for u in page.items], total=page.total))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    body: AdminUserUpdateRequest,
    user_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    user = get_runtime().users.admin_update(
        user_id,
        name=body.name,
        phone=body.phone,
        role=body.role,
        blacklist=body.blacklist,
        blacklist_reason=body.blacklist_reason,
    )
    return ok(AdminUserView.from_user(user), "user updated")


@router.delete("/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    if user_id == principal.user_id:
        raise _http_error("validation_error", "cannot delete your own account", status_code=400)
    get_runtime().users.delete_user(user_id)
    return ok(message="user deleted")


# -- products ---------------------------------------------------------------


@router.post("/products", response_model=Envelope, status_code=201, tags=["products"])
async def create_product(
    name: str = Form(..., min_length=1, max_length=120),
    price: float = Form(..., ge=0),
    description: str = Form(..., max_length=5000),
    category: Category = Form(...),
    sell: bool = Form(True),
    images: List[UploadFile] = File(...),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    files = [await _read_image(f, runtime.settings.max_upload_bytes) for f in images]
    product = await runtime.catalog.create_product(
        name=name.strip(),
        price=price,
        description=description,
        category=category,
        sell=sell,
        images=files,
    )
    return ok(ProductOut.from_product(product), "product created")


@router.get("/products", response_model=Envelope, tags=["products"])
async def list_products_for_sale(
    query: ListQuery = Depends(_list_query(PRODUCT_SORT_FIELDS)),
):
    page = get_runtime().catalog.list_for_sale(query)
    return ok(PageOut(data=[ProductOut.from_product(p) for p in page.items], total=page.total))


@router.get("/products/all", response_model=Envelope, tags=["products"])
async def list_all_products(
    query: ListQuery = Depends(_list_query(PRODUCT_SORT_FIELDS)),
    principal: AuthContext = Depends(get_admin_user),
):
    page = get_runtime().catalog.list_all(query)
    return ok(PageOut(data=[ProductOut.from_product(p) for p in page.items], total=page.total))


@router.get("/products/{product_id}", response_model=Envelope, tags=["products"])
async def get_product(product_id: str):
    product = get_runtime().catalog.get_product(product_id)
    return ok(ProductOut.from_product(product))


@router.patch("/products/{product_id}", response_model=Envelope, tags=["products"])
async def update_product(
    product_id: str,
    name: Optional[str] = Form(None, min_length=1, max_length=120),
    price: Optional[float] = Form(None, ge=0),
    description: Optional[str] = Form(None, max_length=5000),
    category: Optional[Category] = Form(None),
    sell: Optional[bool] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    files = [await _read_image(f, runtime.settings.max_upload_bytes) for f in images or []]
    product = await runtime.catalog.update_product(
        product_id,
        images=files,
        name=name.strip() if name else None,
        price=price,
        description=description,
        category=category,
        sell=sell,
    )
    return ok(ProductOut.from_product(product), "product updated")


@router.delete("/products/{product_id}", response_model=Envelope, tags=["products"])
async def delete_product(
    product_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    get_runtime().catalog.delete_product(product_id)
    return ok(message="product deleted")


# -- orders -----------------------------------------------------------------


@router.post("/orders", response_model=Envelope, status_code=201, tags=["orders"])
async def place_order(body: OrderCreateRequest, principal: AuthContext = Depends(get_user)):
    view = get_runtime().orders.place_order(
        principal.user_id, date=body.date, time=body.time, name=body.name, phone=body.phone
    )
    return ok(_order_out(view), "order placed")


@router.get("/orders", response_model=Envelope, tags=["orders"])
async def list_my_orders(
    query: ListQuery = Depends(_list_query(ORDER_SORT_FIELDS)),
    principal: AuthContext = Depends(get_user),
):
    page = get_runtime().orders.list_for_user(principal.user_id, query)
    return ok(PageOut(data=[_order_out(v) for v in page.items], total=page.total))


@router.get("/orders/all", response_model=Envelope, tags=["orders"])
async def list_all_orders(
    query: ListQuery = Depends(_list_query(ORDER_SORT_FIELDS)),
    principal: AuthContext = Depends(get_admin_user),
):
    page = get_runtime().orders.list_all(query)
    return ok(PageOut(data=[_order_out(v) for v in page.items], total=page.total))
