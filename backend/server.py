from fastapi import FastAPI, APIRouter, BackgroundTasks
from fastapi.encoders import jsonable_encoder
from fastapi.responses import StreamingResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import io
import csv
import logging
from pathlib import Path
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
import uuid
from datetime import datetime, timezone

from engine import MONTHS_UNPAID_TO_CANCEL
from errors import ReconciliationError
from synthetic import SNAPSHOT_KEYS, generate_synthetic
from transformer import reconcile_snapshot

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

mongo_url = os.environ['MONGO_URL']
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ['DB_NAME']]

DEFAULT_MONTHS_UNPAID = int(os.environ.get('MONTHS_UNPAID_TO_CANCEL', MONTHS_UNPAID_TO_CANCEL))

app = FastAPI(title="Invoice Reconciliation API")
api = APIRouter(prefix="/api")

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


# =============================================================================
# MODELS
# =============================================================================
class ReconcileSettings(BaseModel):
    include_accounts: Optional[List[str]] = None
    exclude_accounts: List[str] = Field(default_factory=list)
    exclude_invoices: List[str] = Field(default_factory=list)
    months_unpaid_to_cancel: int = DEFAULT_MONTHS_UNPAID
    cancel_overdue: bool = True
    assume_deleted_cancelled: bool = True


class BillingSnapshot(BaseModel):
    invoice_items: List[Dict[str, Any]] = Field(default_factory=list)
    payments: List[Dict[str, Any]] = Field(default_factory=list)
    refunds: List[Dict[str, Any]] = Field(default_factory=list)
    item_adjustments: List[Dict[str, Any]] = Field(default_factory=list)
    invoice_adjustments: List[Dict[str, Any]] = Field(default_factory=list)
    credit_adjustments: List[Dict[str, Any]] = Field(default_factory=list)
    plans: List[Dict[str, Any]] = Field(default_factory=list)


class ReconcileRequest(BaseModel):
    snapshot: BillingSnapshot
    settings: ReconcileSettings = Field(default_factory=ReconcileSettings)


# =============================================================================
# HELPERS
# =============================================================================
async def get_run(run_id: str):
    doc = await db.runs.find_one({'run_id': run_id}, {'_id': 0})
    return doc

async def update_run(run_id: str, data: dict):
    await db.runs.update_one({'run_id': run_id}, {'$set': data})

async def get_data(run_id: str, dtype: str, default=None):
    doc = await db.run_data.find_one({'run_id': run_id, 'type': dtype}, {'_id': 0})
    return doc.get('data') if doc else default

async def set_data(run_id: str, dtype: str, data):
    await db.run_data.update_one(
        {'run_id': run_id, 'type': dtype},
        {'$set': {'run_id': run_id, 'type': dtype, 'data': data}},
        upsert=True)

async def create_run(snapshot: dict, settings: dict, source: str):
    rid = str(uuid.uuid4())[:12]
    run = {
        'run_id': rid, 'status': 'created', 'source': source,
        'settings': settings,
        'snapshot_rows': {key: len(snapshot.get(key) or []) for key in SNAPSHOT_KEYS},
        'summary': None, 'errors': [], 'accounts': [],
        'processing_status': {'current_step': None, 'steps': {}, 'log': []},
        'created_at': datetime.now(timezone.utc).isoformat(), 'completed_at': None
    }
    await db.runs.insert_one(dict(run))
    await set_data(rid, 'snapshot', snapshot)
    return run


# =============================================================================
# RUN PROCESSING
# =============================================================================
async def run_reconciliation(run_id: str):
    try:
        run = await get_run(run_id)
        settings = run['settings']

        async def log_step(step, status, message=""):
            processing = (await get_run(run_id)).get('processing_status', {})
            steps = processing.get('steps', {})
            steps[step] = {'status': status, 'timestamp': datetime.now(timezone.utc).isoformat()}
            log = processing.get('log', [])
            if message:
                log.append({'step': step, 'message': message, 'timestamp': datetime.now(timezone.utc).isoformat()})
            await update_run(run_id, {'processing_status': {'current_step': step, 'steps': steps, 'log': log}})

        # Step 1: Ingestion
        await log_step('ingestion', 'running', 'Loading billing snapshot...')
        snapshot = await get_data(run_id, 'snapshot', {})
        await log_step('ingestion', 'complete', f"Loaded {len(snapshot.get('invoice_items') or [])} invoice items")

        # Step 2: Reconciliation
        await log_step('reconciliation', 'running', 'Reconciling accounts...')
        result = jsonable_encoder(reconcile_snapshot(snapshot, settings))
        summary = result['summary']
        await log_step('reconciliation', 'complete',
                       f"{summary['reconciled']}/{summary['accounts']} accounts reconciled, {summary['failed']} failed")

        # Step 3: Storage
        await log_step('storage', 'running', 'Storing invoices...')
        for account_id, invoices in result['accounts'].items():
            await set_data(run_id, f'account:{account_id}', invoices)
        await log_step('storage', 'complete', f"{summary['invoices']} invoices stored")

        await update_run(run_id, {
            'status': 'completed',
            'summary': summary,
            'errors': result['errors'],
            'accounts': sorted(result['accounts']),
            'completed_at': datetime.now(timezone.utc).isoformat()
        })
    except Exception as e:
        message = e.chain_message() if isinstance(e, ReconciliationError) else str(e)
        logger.error(f"Reconciliation run {run_id} failed: {message}", exc_info=True)
        await update_run(run_id, {
            'status': 'error',
            'processing_status.error': message
        })


# =============================================================================
# RECONCILE ENDPOINTS
# =============================================================================
@api.post("/reconcile")
async def reconcile(request: ReconcileRequest):
    try:
        result = reconcile_snapshot(request.snapshot.model_dump(), request.settings.model_dump())
    except ReconciliationError as e:
        logger.error(f"Reconciliation failed: {e.chain_message()}")
        return e.to_dict()
    return jsonable_encoder(result)

@api.post("/runs")
async def start_run(request: ReconcileRequest, background_tasks: BackgroundTasks):
    run = await create_run(request.snapshot.model_dump(), request.settings.model_dump(), 'upload')
    await update_run(run['run_id'], {'status': 'processing'})
    background_tasks.add_task(run_reconciliation, run['run_id'])
    return {"run_id": run['run_id'], "status": "processing"}

@api.get("/runs/{run_id}")
async def get_run_info(run_id: str):
    run = await get_run(run_id)
    if not run:
        return {"error": "Run not found"}
    return run

@api.get("/runs/{run_id}/accounts")
async def get_accounts(run_id: str):
    run = await get_run(run_id)
    if not run:
        return {"error": "Run not found"}
    accounts = []
    for account_id in run.get('accounts', []):
        invoices = await get_data(run_id, f'account:{account_id}', [])
        accounts.append({
            'account_id': account_id,
            'invoices': len(invoices),
            'line_items': sum(len(inv['line_items']) for inv in invoices),
            'total_in_cents': sum(item['amount_in_cents'] for inv in invoices for item in inv['line_items']),
        })
    return {"accounts": accounts, "total": len(accounts), "errors": run.get('errors', [])}

@api.get("/runs/{run_id}/accounts/{account_id}")
async def get_account_invoices(run_id: str, account_id: str):
    run = await get_run(run_id)
    if not run:
        return {"error": "Run not found"}
    if account_id not in run.get('accounts', []):
        error = next((e for e in run.get('errors', []) if e.get('account_id') == account_id), None)
        if error:
            return error
        return {"error": "Account not found"}
    invoices = await get_data(run_id, f'account:{account_id}', [])
    return {"account_id": account_id, "invoices": invoices}

# =============================================================================
# EXPORT
# =============================================================================
EXPORT_FIELDS = ['account_id', 'invoice', 'date', 'due_date', 'currency', 'line_item',
                 'subscription', 'plan', 'service_period_start', 'service_period_end',
                 'amount_in_cents', 'discount_amount_in_cents', 'tax_amount_in_cents',
                 'quantity', 'prorated', 'cancelled_at']

@api.get("/runs/{run_id}/export/line_items")
async def export_line_items(run_id: str):
    run = await get_run(run_id)
    if not run:
        return {"error": "Run not found"}

    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=EXPORT_FIELDS)
    writer.writeheader()
    for account_id in run.get('accounts', []):
        for inv in await get_data(run_id, f'account:{account_id}', []):
            for item in inv['line_items']:
                writer.writerow({
                    'account_id': account_id, 'invoice': inv['external_id'], 'date': inv['date'],
                    'due_date': inv['due_date'], 'currency': inv['currency'],
                    'line_item': item['external_id'], 'subscription': item['subscription_external_id'],
                    'plan': item['plan_uuid'],
                    'service_period_start': item['service_period_start'],
                    'service_period_end': item['service_period_end'],
                    'amount_in_cents': item['amount_in_cents'],
                    'discount_amount_in_cents': item['discount_amount_in_cents'],
                    'tax_amount_in_cents': item['tax_amount_in_cents'],
                    'quantity': item['quantity'], 'prorated': item['prorated'],
                    'cancelled_at': item['cancelled_at'] or '',
                })

    return StreamingResponse(io.BytesIO(output.getvalue().encode()),
                             media_type='text/csv',
                             headers={'Content-Disposition': f'attachment; filename=line_items_{run_id}.csv'})

# =============================================================================
# SYNTHETIC DATA
# =============================================================================
@api.get("/synthetic")
async def get_synthetic_data():
    return generate_synthetic()

@api.post("/synthetic")
async def generate_synthetic_data(background_tasks: BackgroundTasks):
    try:
        data = generate_synthetic()
        run = await create_run(data['snapshot'], ReconcileSettings().model_dump(), 'synthetic')
        await update_run(run['run_id'], {'status': 'processing'})
        background_tasks.add_task(run_reconciliation, run['run_id'])
        return {"run_id": run['run_id'], "metadata": data['metadata']}
    except Exception as e:
        logger.error(f"Synthetic generation failed: {e}", exc_info=True)
        return {"error": str(e)}

@api.get("/synthetic/download/{kind}")
async def download_synthetic(kind: str):
    rows = generate_synthetic()['snapshot'].get(kind, [])
    if not rows:
        return {"error": "Unknown record type or no data"}

    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=rows[0].keys())
    writer.writeheader()
    writer.writerows(rows)
    return StreamingResponse(io.BytesIO(output.getvalue().encode()), media_type='text/csv',
                             headers={'Content-Disposition': f'attachment; filename={kind}_synthetic.csv'})

# =============================================================================
# HEALTH
# =============================================================================
@api.get("/")
async def root():
    return {"message": "Invoice Reconciliation API", "status": "running"}

# =============================================================================
# APP CONFIG
# =============================================================================
app.include_router(api)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
