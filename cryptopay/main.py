import logging

from dotenv import load_dotenv
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger("main")

from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from tabulate import tabulate
from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError

from .api.routes import (
    CryptoCheckoutRequest, CryptoStatusRequest, StartMonitorRequest,
    checkout_response, status_response,
)
from .chain.registry import ChainRegistry
from .config import CryptoSettings
from .db.models import CryptoAddress, CryptoAuditLog, CryptoDerivationCounter, CryptoTransaction, Order, utcnow
from .db.session import SessionLocal, engine, init_db
from .errors import CryptoPaymentError, NotFoundOrForbidden
from .pricing.oracle import PriceOracle
from .services.checkout import create_crypto_order
from .services.monitor import monitor_sweep
from .services.settlement import settle_expired
from .services.status import get_status
from .workflows import MonitorWorkflow, SettlementWorkflow
from .workflows.monitor_workflow import TASK_QUEUE

app = FastAPI(title="cryptopay")
app.state.settings = CryptoSettings.from_env()
app.state.price_oracle = PriceOracle.from_settings(app.state.settings)
app.state.chain_registry = ChainRegistry.from_settings(app.state.settings)
app.state.client = None


@app.on_event("startup")
def create_tables():
    init_db(engine)


@app.exception_handler(CryptoPaymentError)
async def crypto_error_handler(request: Request, exc: CryptoPaymentError):
    logger.warning(f"[API] {request.url.path} -> {exc.status_code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.message,
        "timestamp": utcnow().isoformat(),
    })


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_settings() -> CryptoSettings:
    return app.state.settings


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    # set by the authenticating gateway in front of this service
    if not x_user_id:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return x_user_id


def require_operator(x_monitor_key: Optional[str] = Header(None),
                     settings: CryptoSettings = Depends(get_settings)):
    if settings.monitor_api_key and x_monitor_key != settings.monitor_api_key:
        raise HTTPException(status_code=403, detail="Invalid monitor key")


@app.post("/crypto/checkout", tags=["Crypto"])
async def crypto_checkout(body: CryptoCheckoutRequest, user_id: str = Depends(get_current_user),
                          db: Session = Depends(get_db), settings: CryptoSettings = Depends(get_settings)):
    try:
        instructions = await create_crypto_order(
            db, settings, app.state.price_oracle, user_id,
            body.items, body.minecraft_username, body.selected_coin,
        )
    except CryptoPaymentError:
        raise
    except Exception as e:
        logger.error(f"[API] checkout failed for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Checkout failed, please try again")
    return checkout_response(instructions)


@app.post("/crypto/status", tags=["Crypto"])
async def crypto_status(body: CryptoStatusRequest, user_id: str = Depends(get_current_user),
                        db: Session = Depends(get_db)):
    try:
        status = get_status(db, body.order_id, user_id)
    except NotFoundOrForbidden:
        raise
    except Exception as e:
        logger.error(f"[API] status check failed for order {body.order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to check payment status, please try again")
    return status_response(status)


@app.post("/crypto/monitor-sweep", tags=["Monitor"], dependencies=[Depends(require_operator)])
async def crypto_monitor_sweep(db: Session = Depends(get_db), settings: CryptoSettings = Depends(get_settings)):
    summary = await monitor_sweep(db, settings, app.state.chain_registry)
    return {"success": True, **summary.to_dict(), "timestamp": utcnow().isoformat()}


@app.post("/crypto/settle-expired", tags=["Monitor"], dependencies=[Depends(require_operator)])
async def crypto_settle_expired(db: Session = Depends(get_db)):
    return {"ordersExpired": settle_expired(db)}


async def require_temporal() -> Client:
    if app.state.client is None:
        try:
            app.state.client = await Client.connect(app.state.settings.temporal_address)
        except Exception as e:
            logger.error(f"[API] could not reach Temporal at {app.state.settings.temporal_address}: {e}")
            raise HTTPException(status_code=503, detail="Temporal server not reachable")
        logger.info("Temporal client connected.")
    return app.state.client


@app.post("/start-monitor", tags=["System"], dependencies=[Depends(require_operator)])
async def start_monitor(body: Optional[StartMonitorRequest] = None):
    body = body or StartMonitorRequest()
    client = await require_temporal()
    started = {}
    for workflow_id, run, interval in (
        ("crypto-monitor", MonitorWorkflow.run, body.interval_seconds),
        ("crypto-settlement", SettlementWorkflow.run, body.settlement_interval_seconds),
    ):
        try:
            await client.start_workflow(run, interval, id=workflow_id, task_queue=TASK_QUEUE)
            logger.info(f"[{workflow_id}] Workflow started, every {interval}s")
            started[workflow_id] = "started"
        except WorkflowAlreadyStartedError:
            logger.info(f"[{workflow_id}] Workflow already running")
            started[workflow_id] = "already running"
    return {"workflows": started}


@app.get("/db-dump", tags=["Database"], dependencies=[Depends(require_operator)])
async def db_dump(db: Session = Depends(get_db)):
    orders = db.query(Order).filter(Order.payment_method == "crypto").all()
    addresses = db.query(CryptoAddress).all()
    transactions = db.query(CryptoTransaction).all()
    counters = db.query(CryptoDerivationCounter).all()
    events = db.query(CryptoAuditLog).order_by(CryptoAuditLog.id).all()

    def print_table(title, rows, headers):
        print(f"\n== {title}")
        print(tabulate(rows, headers=headers, tablefmt="grid"))

    print_table("Audit Log", [
        [e.id, e.event_type, e.order_id, str(e.event_data), e.created_at.isoformat()] for e in events
    ], ["ID", "Event", "Order ID", "Data", "Timestamp"])

    print_table("Derivation Counters", [
        [c.coin_symbol, c.address_type, c.next_index] for c in counters
    ], ["Coin", "Type", "Next Index"])

    print_table("Transactions", [
        [t.tx_hash, t.crypto_address_id, t.amount, t.confirmations, t.detected_at.isoformat()]
        for t in transactions
    ], ["Tx Hash", "Address ID", "Amount", "Confirmations", "Detected At"])

    print_table("Addresses", [
        [a.order_id, a.coin_symbol, a.address, a.derivation_index, a.expected_amount, a.expires_at.isoformat()]
        for a in addresses
    ], ["Order ID", "Coin", "Address", "Index", "Expected", "Expires At"])

    print_table("Orders", [
        [o.id, o.status, o.crypto_payment_status, o.total_amount, o.crypto_total_received, o.refund_status,
         o.created_at.isoformat()] for o in orders
    ], ["Order ID", "Status", "Payment", "USD", "Received", "Refund", "Created At"])

    return {"status": "DB dump printed to terminal"}


@app.get("/", tags=["System"])
async def root():
    return {"status": "ok"}
