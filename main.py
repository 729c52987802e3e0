#!/usr/bin/env python3
"""
Position Ledger
Main entry point: replays an order file into a fresh portfolio and reports
positions, gain/loss and reconciliation against the journal.

Order CSV columns:
    type    BUY, SELL, DIVIDEND, FEE, DEPOSIT or WITHDRAWAL
    ticker  Ticker symbol (BUY, SELL, DIVIDEND)
    shares  Share count (BUY, SELL)
    price   Price per share (BUY, SELL)
    fee     Commission (optional, BUY, SELL)
    amount  Cash amount (DIVIDEND, FEE, DEPOSIT, WITHDRAWAL)

Prices CSV columns:
    ticker, price
"""

import argparse
import json
import logging
import os
import sys
from datetime import timedelta
from typing import Dict

import pandas as pd

from position_ledger import AccountingEngine, EngineConfig, YFinanceProvider
from position_ledger.analytics import calculate_performance_metrics
from position_ledger.core.exceptions import AccountingError

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ['type']


def load_orders(orders_path: str) -> pd.DataFrame:
    """
    Load and normalise an order file.

    Args:
        orders_path: Path to order CSV file

    Returns:
        DataFrame with one row per order, in file order
    """
    orders = pd.read_csv(orders_path)
    orders.columns = [c.strip().lower() for c in orders.columns]
    missing = [c for c in REQUIRED_COLUMNS if c not in orders.columns]
    if missing:
        raise ValueError(f"Order file {orders_path} is missing columns: {missing}")

    for column in ['ticker', 'shares', 'price', 'fee', 'amount']:
        if column not in orders.columns:
            orders[column] = None
    orders['type'] = orders['type'].astype(str).str.strip().str.upper()
    orders['ticker'] = orders['ticker'].where(orders['ticker'].notna(), None)
    orders['fee'] = orders['fee'].fillna(0)
    logger.info(f"Loaded {len(orders)} orders from {orders_path}")
    return orders


def load_prices(prices_path: str) -> Dict[str, str]:
    prices = pd.read_csv(prices_path)
    prices.columns = [c.strip().lower() for c in prices.columns]
    return {str(row['ticker']).strip(): str(row['price']) for _, row in prices.iterrows()}


def apply_orders(engine: AccountingEngine, portfolio_id: str, orders: pd.DataFrame) -> Dict[str, int]:
    """
    Apply orders through the engine, skipping (and logging) rejected rows.

    Returns:
        Counts of applied and rejected orders
    """
    applied, rejected = 0, 0
    for index, row in orders.iterrows():
        order_type = row['type']
        try:
            if order_type == 'BUY':
                engine.apply_buy(portfolio_id, row['ticker'], str(row['shares']), str(row['price']), str(row['fee']))
            elif order_type == 'SELL':
                engine.apply_sell(portfolio_id, row['ticker'], str(row['shares']), str(row['price']), str(row['fee']))
            elif order_type == 'DIVIDEND':
                engine.apply_dividend(portfolio_id, row['ticker'], str(row['amount']))
            elif order_type == 'FEE':
                engine.apply_fee(portfolio_id, str(row['amount']))
            elif order_type == 'DEPOSIT':
                engine.deposit_cash(portfolio_id, str(row['amount']))
            elif order_type == 'WITHDRAWAL':
                engine.withdraw_cash(portfolio_id, str(row['amount']))
            else:
                raise ValueError(f"Unknown order type '{order_type}'")
            applied += 1
        except (AccountingError, ValueError) as e:
            rejected += 1
            logger.warning(f"Order {index + 1} rejected: {str(e)}")
    return {'applied': applied, 'rejected': rejected}


def run_ledger(orders_path, prices_path, config_path, output_dir, client_id, refresh):
    """
    Replay an order file and report the resulting portfolio.

    Args:
        orders_path: Path to order CSV file
        prices_path: Optional path to a ticker/price CSV file
        config_path: Optional path to configuration JSON file
        output_dir: Optional output directory for summary and journal exports
        client_id: Client the portfolio belongs to
        refresh: Fetch current prices from Yahoo Finance
    """
    config = EngineConfig.load(config_path)
    logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    engine = AccountingEngine(config=config, market_data=YFinanceProvider() if refresh else None)
    try:
        portfolio = engine.create_portfolio(client_id)
        counts = apply_orders(engine, portfolio.portfolio_id, load_orders(orders_path))

        if prices_path:
            prices = load_prices(prices_path)
            held = portfolio.get_all_positions()
            engine.update_prices(portfolio.portfolio_id, {t: p for t, p in prices.items() if t in held})
        if refresh:
            result = engine.refresh_prices(portfolio.portfolio_id)
            if result.not_found or result.timed_out or result.failed:
                print(f"Price refresh incomplete: not found {result.not_found}, "
                      f"timed out {result.timed_out}, failed {sorted(result.failed)}")

        summary = portfolio.get_portfolio_summary(stale_after=timedelta(minutes=config.stale_after_minutes))
        valuation = engine.get_valuation(portfolio.portfolio_id)
        discrepancies = engine.reconcile(portfolio.portfolio_id)

        print("\n" + "=" * 60)
        print("POSITION LEDGER")
        print("=" * 60)
        print(f"Orders applied: {counts['applied']}, rejected: {counts['rejected']}")
        print(f"Positions: {summary['number_of_positions']}")
        for row in valuation.positions:
            stale = " (stale)" if row.is_stale else ""
            print(f"  {row.ticker:<6} {row.shares:>14} @ {row.average_cost_basis:>10}  "
                  f"value {row.current_value:>12}  P&L {row.unrealized_gain_loss:>10}{stale}")
        print(f"Total value:        {summary['total_value']:,.2f}")
        if summary['has_stale_prices']:
            print(f"  includes stale prices for {', '.join(summary['stale_tickers'])}")
        print(f"Total cost:         {summary['total_cost']:,.2f}")
        print(f"Cash balance:       {summary['cash_balance']:,.2f}")
        print(f"Unrealized G/L:     {summary['unrealized_gain_loss']:,.2f}")
        print(f"Realized G/L:       {summary['realized_gain_loss']:,.2f}")
        print(f"Dividends:          {summary['cumulative_dividends']:,.2f}")
        print(f"Fees:               {summary['total_fees']:,.2f}")
        print(f"Return:             {summary['return_percentage']:.2f}%")
        print(f"Reconciled with journal: {'yes' if not discrepancies else f'no ({len(discrepancies)} differences)'}")

        if output_dir:
            os.makedirs(output_dir, exist_ok=True)
            summary['performance'] = calculate_performance_metrics(portfolio)
            with open(os.path.join(output_dir, 'portfolio_summary.json'), 'w') as f:
                json.dump(summary, f, indent=2, default=str)
            engine.journal.to_dataframe(portfolio.portfolio_id).to_csv(
                os.path.join(output_dir, 'journal.csv'), index=False)
            with open(os.path.join(output_dir, 'snapshot.json'), 'w') as f:
                f.write(engine.snapshot(portfolio.portfolio_id).to_json())
            print(f"Results written to {output_dir}")

        return {'summary': summary, 'counts': counts, 'discrepancies': discrepancies}
    finally:
        engine.close()


def main():
    parser = argparse.ArgumentParser(description="Replay orders into a position ledger and report the result")
    parser.add_argument("orders", help="Order CSV file path")
    parser.add_argument("--prices", default=None, help="Ticker/price CSV file path")
    parser.add_argument("--config", default=None, help="Configuration file path")
    parser.add_argument("--output", default=None, help="Output directory")
    parser.add_argument("--client", default="cli", help="Client id for the portfolio")
    parser.add_argument("--refresh", action="store_true", help="Fetch current prices from Yahoo Finance")

    args = parser.parse_args()

    try:
        run_ledger(args.orders, args.prices, args.config, args.output, args.client, args.refresh)
    except (AccountingError, OSError, ValueError) as e:
        print(f"\nLedger run failed: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
