import textwrap
import uuid

import pandas as pd
import streamlit as st

from models import FundingHistory
from utils import format_countdown

PALETTE = {
    "bg": "var(--background-color)",
    "text": "var(--text-color)",
    "hover": "var(--secondary-background-color)",
    "border": "rgba(128, 128, 128, 0.2)",
    "row_border": "rgba(128, 128, 128, 0.1)",
}

USD_COLUMNS = ["OI Value", "Insurance Fund", "Market Cap", "FDV", "24h Volume"]
# upper bound of the Fund/OI colour scale
FUND_OI_CEILING = 50.0


def render_global_theme_styles():
    p = PALETTE
    st.markdown(
        f"""
        <style>
        .block-container {{ padding-top: 0.75rem !important; }}
        .page-title {{
            font-size: 2rem;
            font-weight: 750;
            color: {p["text"]};
            margin-bottom: 0.75rem;
        }}
        .status-line {{
            font-size: 14px;
            color: {p["text"]};
            opacity: 0.85;
            margin: 0.3rem 0;
        }}
        div[data-testid="stPopover"] {{ display: flex; justify-content: flex-end; }}
        div[data-testid="stPopover"] > button {{
            border-radius: 999px;
            border: 1px solid {p["border"]};
            background: {p["bg"]};
        }}
        </style>
        """,
        unsafe_allow_html=True,
    )


def render_settings_popover(default_exchanges):
    """Gear popover with one checkbox per venue; returns the ticked venues."""
    for ex in default_exchanges:
        st.session_state.setdefault(f"chk_{ex}", True)

    with st.popover("⚙"):
        st.markdown("**Exchanges**")
        for col, ex in zip(st.columns(len(default_exchanges)), default_exchanges):
            with col:
                st.checkbox(ex, key=f"chk_{ex}")

    return [ex for ex in default_exchanges if st.session_state.get(f"chk_{ex}")]


def render_filters():
    """Returns (search, min_oi_value, min_fund_oi_ratio, min_volume)."""
    search_col, oi_col, ratio_col, vol_col = st.columns([2, 1, 1, 1])
    with search_col:
        search = st.text_input("Symbol", placeholder="BTC, ETH, ...")
    with oi_col:
        min_oi = st.number_input("Min OI value ($)", min_value=0.0, value=0.0, step=1_000_000.0)
    with ratio_col:
        min_ratio = st.number_input("Min Fund/OI %", min_value=0.0, value=0.0, step=0.1)
    with vol_col:
        min_volume = st.number_input("Min 24h volume ($)", min_value=0.0, value=0.0, step=1_000_000.0)
    return search, min_oi, min_ratio, min_volume


def render_rate_explanation():
    st.markdown(
        '<div class="status-line">'
        "Fund/OI = <code>insurance fund ÷ OI value × 100</code>. Pooled funds are shown in full "
        "on every contract that shares them. "
        "APY = <code>rate × (24 / interval) × 365 × 100</code>."
        "</div>",
        unsafe_allow_html=True,
    )


def render_last_update(ts: str, record_count: int):
    st.markdown(
        f'<div class="status-line">Last update: {ts} · {record_count} contracts</div>',
        unsafe_allow_html=True,
    )


def _fmt_usd(x):
    return "-" if pd.isna(x) else "${:,.0f}".format(x)


def _fmt_pct(x, digits=2):
    return "-" if pd.isna(x) else f"{x:.{digits}f}%"


def _style_table(df: pd.DataFrame):
    fmt = {col: _fmt_usd for col in USD_COLUMNS if col in df.columns}
    fmt.update({
        "Price": lambda x: "-" if pd.isna(x) else f"{x:,.6g}",
        "Fund/OI %": lambda x: _fmt_pct(x, 4),
        "APY%": _fmt_pct,
        "Funding Rate": lambda x: "-" if pd.isna(x) else f"{x * 100:.4f}%",
        "Next Funding": format_countdown,
    })
    styler = df.style.format(fmt).hide(axis="index")

    styler = styler.background_gradient(subset=["APY%"], cmap="RdYlGn", vmin=-50, vmax=50)

    ratios = df["Fund/OI %"].dropna()
    if not ratios.empty:
        vmax = min(max(float(ratios.quantile(0.95)), 0.01), FUND_OI_CEILING)
        styler = styler.background_gradient(
            subset=["Fund/OI %"], cmap="RdYlGn", vmin=0, vmax=vmax
        )
    return styler


SORT_SCRIPT = r"""
<script>
(function () {
  const doc = window.parent.document;
  function numeric(txt) {
    // countdowns: 3h20m / 04m05s
    const hm = txt.match(/^(\d+)h(\d+)m$/);
    if (hm) return hm[1] * 3600 + hm[2] * 60;
    const ms = txt.match(/^(\d+)m(\d+)s$/);
    if (ms) return ms[1] * 60 + +ms[2];
    return parseFloat(txt.replace(/[%,$]/g, ""));
  }

  function attach(table) {
    const state = { col: -1, asc: false };
    table.querySelectorAll("thead th").forEach((th, idx) => {
      th.onclick = () => {
        state.asc = state.col === idx ? !state.asc : false;
        state.col = idx;
        const body = table.tBodies[0];
        const rows = Array.from(body.rows);
        rows.sort((a, b) => {
          const x = a.cells[idx].textContent.trim();
          const y = b.cells[idx].textContent.trim();
          const nx = numeric(x), ny = numeric(y);
          const cmp = isNaN(nx) || isNaN(ny) ? x.localeCompare(y) : nx - ny;
          return state.asc ? cmp : -cmp;
        });
        rows.forEach((r) => body.appendChild(r));
      };
    });
  }

  function waitFor(tries) {
    const table = doc.getElementById("__TABLE_ID__");
    if (table) return attach(table);
    if (tries > 0) setTimeout(() => waitFor(tries - 1), 150);
  }
  waitFor(10);
})();
</script>
"""


def render_perps_table(df: pd.DataFrame):
    """
    Render the table as styled HTML; header clicks sort rows in the browser.
    """
    p = PALETTE
    table_id = f"perps_{uuid.uuid4().hex[:8]}"
    html = _style_table(df).to_html(table_uuid=table_id)
    html = html.replace("<table", f'<table id="{table_id}" class="perps-table"', 1)

    st.markdown(
        textwrap.dedent(
            f"""
            <style>
            .perps-table {{
                width: 100%;
                border-collapse: collapse;
                font-size: 13px;
                color: {p["text"]};
                background: {p["bg"]};
            }}
            .perps-table thead {{ position: sticky; top: 3rem; background: {p["bg"]}; }}
            .perps-table th {{
                padding: 8px;
                cursor: pointer;
                white-space: nowrap;
                border-bottom: 1px solid {p["border"]};
            }}
            .perps-table td {{
                padding: 6px 8px;
                text-align: right;
                white-space: nowrap;
                font-variant-numeric: tabular-nums;
                border-bottom: 1px solid {p["row_border"]};
            }}
            .perps-table tbody tr:hover {{ background: {p["hover"]}; }}
            </style>
            """
        ),
        unsafe_allow_html=True,
    )
    st.markdown(html, unsafe_allow_html=True)
    st.components.v1.html(SORT_SCRIPT.replace("__TABLE_ID__", table_id), height=0)


def render_funding_history(history: FundingHistory, symbol: str, exchange: str):
    if not history.points:
        st.info(f"No funding history for {symbol} on {exchange}.")
        return

    df = pd.DataFrame([p.to_dict() for p in history.points])
    df["time"] = pd.to_datetime(df["time"], unit="ms")
    df["rate %"] = df["rate"] * 100
    st.line_chart(df.set_index("time")[["rate %"]], height=260)

    if history.constituents:
        st.markdown("**Index constituents**")
        st.dataframe(
            pd.DataFrame([c.to_dict() for c in history.constituents]),
            hide_index=True,
            use_container_width=True,
        )
