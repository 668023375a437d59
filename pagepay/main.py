import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger("api")

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool
from pagepay.api.schemas import PaymentRequest, StatusUpdate
from pagepay.config import GatewayConfig
from pagepay.errors import PaymentError
from pagepay.services.payment_service import PaymentService


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.service is None:
        config = GatewayConfig.from_env()
        service = PaymentService(config)
        service.initialize()
        app.state.service = service
        logger.info(f"Payment service ready ({config.environment}, gateway {config.gateway_url})")
    yield


app = FastAPI(lifespan=lifespan)
app.state.service = None


def require_service() -> PaymentService:
    if app.state.service is None:
        raise HTTPException(status_code=503, detail="Payment service not initialized")
    return app.state.service


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    logger.warning(f"{request.method} {request.url.path} failed: {exc.code} — {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"success": False, "error": exc.to_dict()})


@app.post("/payments", tags=["Payment"])
async def create_payment(payment: PaymentRequest, request: Request):
    service = require_service()
    result = await run_in_threadpool(
        service.create_payment_and_generate_url,
        payment.model_dump(),
        str(request.base_url),
    )
    return {"success": True, "order": result.order.to_dict(), "payment_url": result.payment_url}


@app.post("/alipay/notify", tags=["Gateway"], response_class=PlainTextResponse)
async def alipay_notify(request: Request):
    service = require_service()
    payload = dict(await request.form())
    logger.info(
        f"[notify] out_trade_no={payload.get('out_trade_no')} trade_no={payload.get('trade_no')} "
        f"trade_status={payload.get('trade_status')}"
    )
    result = await run_in_threadpool(service.handle_notify_callback, payload)
    if not result.success:
        logger.error(f"[notify] failed: {result.message}")
    # The gateway retries until it reads exactly "success".
    return PlainTextResponse("success" if result.success else "failure")


@app.get("/alipay/return", tags=["Gateway"])
async def alipay_return(request: Request):
    service = require_service()
    payload = dict(request.query_params)
    if not payload:
        raise HTTPException(status_code=400, detail="Missing payment return parameters")
    result = await run_in_threadpool(service.handle_return_callback, payload)
    return JSONResponse(status_code=200 if result.success else 400, content=result.to_dict())


@app.get("/payments/{out_trade_no}", tags=["Payment"])
async def payment_status(out_trade_no: str):
    service = require_service()
    result = await run_in_threadpool(service.query_payment_status, out_trade_no)
    if not result.success:
        raise HTTPException(status_code=404, detail=result.message)
    return result.to_dict()


@app.get("/orders", tags=["Orders"])
async def list_orders(status: Optional[str] = None, limit: Optional[int] = None, offset: int = 0):
    service = require_service()
    orders = await run_in_threadpool(service.list_orders, status, limit, offset)
    return {"orders": [o.to_dict() for o in orders]}


@app.get("/orders/stats", tags=["Orders"])
async def order_stats():
    service = require_service()
    stats = await run_in_threadpool(service.get_stats)
    return stats.to_dict()


@app.post("/orders/{order_id}/status", tags=["Orders"])
async def update_order_status(order_id: str, update: StatusUpdate):
    service = require_service()
    order = await run_in_threadpool(service.update_order_status, order_id, update.status)
    return {"success": True, "order": order.to_dict()}


@app.get("/config", tags=["System"])
async def payment_config():
    return require_service().get_payment_config()


@app.get("/", tags=["System"])
async def root():
    return {"status": "ok"}
