"""Shared definitions for the semantic compiler tests."""
import pytest

from findly.packages.semantic.findly_semantic.loader import load_registry
from findly.packages.semantic.findly_semantic.query.engine import SemanticQueryEngine
from findly.packages.semantic.findly_semantic.registry import RegistryHolder, SemanticRegistry

SHOP_DEFINITIONS = """
data_sources:
  - name: shop_orders
    table: analytics.orders
    metadata:
      location: SEMANTIC_LAYER
    measures:
      - name: revenue_amount
        expr: price * quantity
        agg: SUM
      - name: order_count
        expr: order_id
        agg: COUNT_DISTINCT
      - name: refund_amount
        expr: refund
        agg: SUM
  - name: fb_insights
    table: marketing.fb_insights
    metadata:
      location: FB_ADS
      property_id: act_1001
    measures:
      - name: clicks
      - name: impressions
      - name: spend
  - name: ga4_events
    table: web.ga4_events
    metadata:
      location: GA4
      property_id: "2001"
    measures:
      - name: sessions

dimensions:
  - name: order_date
    expr: created_at
    type: TIME
    type_params:
      time_granularity: DAY
      is_primary: true
    data_source_names: [shop_orders]
  - name: ship_date
    expr: shipped_at
    type: TIME
    type_params:
      time_granularity: DAY
    data_source_names: [shop_orders]
  - name: delivered_date
    expr: delivered_at
    type: TIME
    type_params:
      time_granularity: WEEK
    data_source_names: [shop_orders]
  - name: country
    value_type: string
    data_source_names: [shop_orders]
  - name: fb_date
    expr: date_start
    type: TIME
    type_params:
      time_granularity: DAY
      is_primary: true
    data_source_names: [fb_insights]
  - name: campaign_name
    type: FB_ADS_FIELD
    data_source_names: [fb_insights]
  - name: fb_ad_account
    expr: account_id
    type: FB_ADS_FIELD
    data_source_names: [fb_insights]
  - name: event_date
    type: TIME
    type_params:
      time_granularity: DAY
      is_primary: true
    data_source_names: [ga4_events]

metrics:
  - name: revenue
    type: MEASURE_PROXY
    measures: [revenue_amount]
  - name: orders
    type: MEASURE_PROXY
    measures: [order_count]
  - name: refunds
    type: MEASURE_PROXY
    measures: [refund_amount]
  - name: ctr
    type: RATIO
    numerator: clicks
    denominator: impressions
  - name: ga4_sessions
    type: MEASURE_PROXY
    measures: [sessions]
  - name: revenue_mtd
    type: CUMULATIVE
    measures: [revenue_amount]
    grain_to_date: MONTH
  - name: revenue_rolling_week
    type: CUMULATIVE
    measures: [revenue_amount]
    window: 7 days
  - name: revenue_running
    type: CUMULATIVE
    measures: [revenue_amount]
  - name: avg_order_value
    type: DERIVED
    expression: revenue_amount / order_count
    measures: [revenue_amount, order_count]
  - name: net_revenue
    type: SQL_EXPRESSION
    expression: revenue_amount - refund_amount
  - name: cost_per_click
    type: DERIVED
    expression: spend / clicks
"""


@pytest.fixture()
def registry() -> SemanticRegistry:
    return load_registry(SHOP_DEFINITIONS)


@pytest.fixture()
def holder(registry: SemanticRegistry) -> RegistryHolder:
    return RegistryHolder(registry)


@pytest.fixture()
def engine(holder: RegistryHolder) -> SemanticQueryEngine:
    return SemanticQueryEngine(holder, dialect="bigquery")


@pytest.fixture()
def shop_definitions() -> str:
    return SHOP_DEFINITIONS
