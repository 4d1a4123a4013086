import logging, os
import streamlit as st
import pandas as pd
import plotly.express as px
from avgx_index.calculator import build_calculator, history_frame, basket_frame
from avgx_index.config import TIMEFRAMES
from avgx_index.errors import AvgxError

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

st.set_page_config(page_title="AVGX Index", layout="wide")

st.title("AVGX — Fiat × Crypto Basket Index")


def load_secrets():
    try:
        return dict(st.secrets)
    except FileNotFoundError:
        return dict(os.environ)


@st.cache_resource
def get_calculator():
    # one pipeline per process: it is the only writer of the data directory
    return build_calculator(secrets=load_secrets())


calc = get_calculator()

# --- Sidebar controls ---
st.sidebar.header("Settings")
timeframe = st.sidebar.selectbox("History window", list(TIMEFRAMES), index=0)
show_debug = st.sidebar.checkbox("Show stability formula internals", False)

st.sidebar.write("—")
if st.sidebar.button("Refresh"):
    st.rerun()

# --- Explanatory notes ---
with st.expander("How the index is computed"):
    st.markdown("""
**Baskets**
- *WF*: weighted average of fiat currencies in USD terms (1 / units-per-USD)
- *WC*: weighted average of cryptocurrency USD prices

**Stability formula**
- EWMA smoothing of each basket (α_f for fiat, α_c for crypto)
- σ_t = min(1, annualized std of recent WC log-returns / V_target)
- AVGX = √( WF_smoothed × WC_smoothed × (1 − σ_t) )
- Each published value may move at most ±clamp % from the previous one

**Fallbacks**
- Feed outage → last-known baseline prices
- Corrupt smoothing history → raw basket values
""")

# --- Run pipeline ---
try:
    breakdown = calc.get_detailed_breakdown()
    conversions = calc.convert_to_all_currencies(breakdown["avgx"])
except AvgxError as e:
    st.error(f"Failed to calculate AVGX index: {e}")
    st.stop()

avgx = breakdown["avgx"]

col1, col2, col3, col4 = st.columns(4)
col1.metric("AVGX (USD)", f"${avgx['avgx_usd']:,.4f}", f"{avgx['change24h']:+.2f}% 24h")
col2.metric("WF (smoothed)", f"{avgx['wf_value']:.4f}")
col3.metric("WC (adjusted)", f"${avgx['wc_value']:,.2f}")
col4.metric("Updated", pd.to_datetime(avgx["timestamp"]).strftime("%Y-%m-%d %H:%M UTC"))

# --- History ---
st.subheader(f"History — {timeframe}")
hist = history_frame(calc.get_historical_data(timeframe))
if hist.empty:
    st.info("No history recorded yet for this window.")
else:
    fig = px.line(hist, x="timestamp", y="avgx_usd", labels={"avgx_usd": "AVGX (USD)", "timestamp": ""})
    st.plotly_chart(fig, use_container_width=True)

# --- Baskets ---
fiat_col, crypto_col = st.columns(2)
with fiat_col:
    st.subheader("Fiat basket")
    st.dataframe(
        basket_frame(breakdown["fiat_basket"])[["code", "name", "weight", "value", "source"]],
        use_container_width=True,
        column_config={
            "weight": st.column_config.NumberColumn("Weight", format="%.2f"),
            "value": st.column_config.NumberColumn("Per USD", format="%.4f"),
        },
    )
with crypto_col:
    st.subheader("Crypto basket")
    st.dataframe(
        basket_frame(breakdown["crypto_basket"])[["symbol", "name", "weight", "value", "change_24h", "source"]],
        use_container_width=True,
        column_config={
            "weight": st.column_config.NumberColumn("Weight", format="%.2f"),
            "value": st.column_config.NumberColumn("Price", format="$%.4f"),
            "change_24h": st.column_config.NumberColumn("24h", format="%.2f%%"),
        },
    )

# --- Conversions ---
st.subheader("1 AVGX in each basket currency")
conv = pd.DataFrame(conversions)
st.dataframe(
    conv,
    use_container_width=True,
    column_config={
        "rate": st.column_config.NumberColumn("Per USD", format="%.4f"),
        "avgx_rate": st.column_config.NumberColumn("AVGX", format="%.4f"),
    },
)

if show_debug:
    st.subheader("Stability formula internals")
    st.json(calc.get_debug_info())

with st.expander("Baseline status"):
    st.json(calc.get_baseline_status())

# --- Downloads ---
st.subheader("Download")
st.download_button(
    "Download history (CSV)",
    hist.to_csv(index=False),
    file_name=f"avgx_history_{timeframe}.csv",
    mime="text/csv"
)
