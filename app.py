import asyncio
import logging
import threading
import time

import streamlit as st
from streamlit_autorefresh import st_autorefresh

import perps_core
import ui_components
from funding_history import fetch_funding_history
from models import FundingHistory
from utils import LOG_DATEFMT, LOG_FORMAT

logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    datefmt=LOG_DATEFMT,
    force=True,
)
logger = logging.getLogger("perp_monitor")

st.set_page_config(page_title="Perp Insurance Monitor", layout="wide")

USE_MOCK_DATA = False  # True = random local rows, False = live venues
REFRESH_SECONDS = 60

st_autorefresh(interval=REFRESH_SECONDS * 1000, key="data_refresh")


# ============ data ============

@st.cache_resource
def start_background_fetcher(use_mock: bool = False):
    """
    Background thread: aggregate every REFRESH_SECONDS into data_store.
    The UI only reads data_store and never calls the venues itself.
    """
    data_store = {"records": None, "ts": None}
    lock = threading.Lock()

    def loop():
        while True:
            try:
                if use_mock:
                    records = perps_core.generate_mock_data()
                else:
                    records = asyncio.run(perps_core.aggregate())

                ts = time.time()
                with lock:
                    data_store["records"] = records
                    data_store["ts"] = ts

                logger.info("Background fetch ok, %d records", len(records))
            except Exception as e:
                logger.exception("Background fetch failed: %s", e)

            time.sleep(REFRESH_SECONDS)

    t = threading.Thread(target=loop, daemon=True)
    t.start()
    return data_store, lock


@st.cache_data(ttl=300, show_spinner=False)
def load_funding_history(symbol: str, exchange: str) -> FundingHistory:
    return asyncio.run(fetch_funding_history(symbol, exchange))


data_store, data_lock = start_background_fetcher(USE_MOCK_DATA)

with data_lock:
    records = data_store["records"]
    last_update_ts = data_store["ts"]

if records is None:
    st.markdown(
        '<div style="font-size:14px; opacity:0.85;">Fetching venue data, refresh in a moment...</div>',
        unsafe_allow_html=True,
    )
    st.stop()

last_update = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(last_update_ts))

# ============ header ============

title_col, gear_col = st.columns([8, 1])
with title_col:
    st.markdown('<div class="page-title">Perp Insurance Fund Monitor</div>', unsafe_allow_html=True)
with gear_col:
    selected_exchanges = ui_components.render_settings_popover(perps_core.EXCHANGE_NAMES)

ui_components.render_global_theme_styles()
search, min_oi, min_ratio, min_volume = ui_components.render_filters()

# ============ table ============

df = perps_core.records_to_frame(records)
df = perps_core.filter_frame(
    df,
    selected_exchanges,
    search,
    min_oi_value=min_oi,
    min_fund_oi_ratio=min_ratio,
    min_volume=min_volume,
)

ui_components.render_last_update(last_update, len(df))
ui_components.render_rate_explanation()

if df.empty:
    st.error("No contracts match. Check the filters, or the logs for per-exchange errors.")
else:
    with st.expander("Funding rate history"):
        sym_col, ex_col = st.columns([3, 1])
        with sym_col:
            symbol = st.selectbox("Contract", sorted(df["Symbol"].unique()))
        with ex_col:
            listed_on = sorted(df.loc[df["Symbol"] == symbol, "Exchange"].unique())
            exchange = st.selectbox("Exchange", listed_on)
        if symbol and exchange:
            try:
                history = load_funding_history(symbol, exchange)
            except Exception as e:
                logger.error("Funding history for %s on %s failed: %s", symbol, exchange, e)
                st.warning(f"Could not load funding history for {symbol} on {exchange}.")
            else:
                ui_components.render_funding_history(history, symbol, exchange)

    ui_components.render_perps_table(df)
