# Overview: Builds the core components once per app and hands each its storage client, cache and logger.

from __future__ import annotations

from dataclasses import dataclass

from flask import Flask, current_app

from .cache import ReadCache, build_backend
from .services.catalog import CatalogDirectory
from .services.refund_orchestrator import RefundOrchestrator
from .services.sale_orchestrator import SaleOrchestrator
from .services.stock_ledger import StockLedger


EXTENSION_KEY = "storeledger"


@dataclass
class RetailCore:
    catalog: CatalogDirectory
    cache: ReadCache
    ledger: StockLedger
    sales: SaleOrchestrator
    refunds: RefundOrchestrator


def build_core(app: Flask, db) -> RetailCore:
    cfg = app.config
    logger = app.logger

    cache = ReadCache(
        build_backend(cfg["CACHE_BACKEND"]),
        ttls={
            "stock": cfg["STOCK_CACHE_TTL"],
            "list": cfg["LIST_CACHE_TTL"],
            "history": cfg["HISTORY_CACHE_TTL"],
        },
        logger=logger,
    )
    catalog = CatalogDirectory(db)
    ledger = StockLedger(
        db,
        catalog=catalog,
        cache=cache,
        logger=logger,
        low_stock_threshold=cfg["LOW_STOCK_THRESHOLD"],
    )
    sales = SaleOrchestrator(
        db,
        ledger=ledger,
        catalog=catalog,
        cache=cache,
        logger=logger,
        amount_tolerance_cents=cfg["AMOUNT_TOLERANCE_CENTS"],
        compensation_attempts=cfg["COMPENSATION_ATTEMPTS"],
        compensation_backoff=cfg["COMPENSATION_BACKOFF_SECONDS"],
    )
    refunds = RefundOrchestrator(
        db,
        sales=sales,
        ledger=ledger,
        cache=cache,
        logger=logger,
        refund_window_days=cfg["REFUND_WINDOW_DAYS"],
        amount_tolerance_cents=cfg["AMOUNT_TOLERANCE_CENTS"],
    )
    return RetailCore(catalog=catalog, cache=cache, ledger=ledger, sales=sales, refunds=refunds)


def get_core() -> RetailCore:
    """The components wired for the current app."""
    return current_app.extensions[EXTENSION_KEY]
