# app.py
import logging
from datetime import date

import pandas as pd
import streamlit as st
import streamlit_authenticator as stauth

import db
import logic
import notify
import orders
from config import load_settings

# -----------------------------
# INIT
# -----------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

st.set_page_config(
    page_title="Stock Book",
    page_icon="📦",
    layout="wide"
)

settings = load_settings()
store = db.SheetStore(settings.db_path)
logic.init_workbook(store, settings)


# ================= LOGIN WALL =================

credentials = {
    "usernames": {
        username: {
            "name": user["name"],
            "password": user["password"],
        }
        for username, user in st.secrets["credentials"]["usernames"].items()
    }
}
st.markdown("### Stock Book")
st.markdown("---")
authenticator = stauth.Authenticate(
    credentials,
    st.secrets["cookie"]["name"],
    st.secrets["cookie"]["key"],
    st.secrets["cookie"]["expiry_days"],
)
authenticator.login("main")

authentication_status = st.session_state.get("authentication_status")
name = st.session_state.get("name")

if authentication_status is False:
    st.error("❌ Wrong credentials")
    st.stop()

if authentication_status is None:
    st.info("Enter your username and password")
    st.stop()

# =================================================
authenticator.logout("Logout", "sidebar")
st.sidebar.write(f"Logged in as {name}")
st.markdown("""
<style>
.stButton > button {
    background-color: #1d3557;
    color: white;
    width: 100%;
    height: 45px;
    font-weight: bold;
}
</style>
""", unsafe_allow_html=True)


# -----------------------------
# NAV
# -----------------------------
with st.sidebar:
    st.markdown("### Navigation")
    page = st.radio(
        "Go to",
        [
            "Materials",
            "Purchases",
            "Sales",
            "Manual Stock",
            "Stock Summary",
            "Exports",
        ],
    )

# -----------------------------
# Helpers
# -----------------------------
def _read_any_file(uploaded):
    if uploaded is None:
        return None
    name = uploaded.name.lower()
    if name.endswith(".csv"):
        return pd.read_csv(uploaded)
    if name.endswith(".xlsx") or name.endswith(".xls"):
        return pd.read_excel(uploaded)
    raise ValueError("Unsupported file type")


def _quantity_inputs(catalog, key: str) -> dict:
    """One whole-number input per catalog material."""
    quantities = {}
    cols = st.columns(4)
    for i, material in enumerate(catalog.materials):
        quantities[material.id] = cols[i % 4].number_input(
            f"{material.id} — {material.name}",
            min_value=0,
            value=0,
            step=1,
            key=f"{key}_{material.id}",
        )
    return quantities


def _optional_date(label: str, key: str):
    known = st.checkbox(f"{label} known", key=f"{key}_known")
    return st.date_input(label, key=key) if known else None


catalog = logic.load_catalog(store, settings)

# =================================================
# MATERIALS
# =================================================
if page == "Materials":
    st.title("Materials")

    st.dataframe(
        pd.DataFrame([{"material_id": m.id, "material_name": m.name} for m in catalog.materials]),
        use_container_width=True,
    )

    st.subheader("Add material")
    c1, c2, c3 = st.columns([2, 4, 2])
    new_id = c1.text_input("Material ID")
    new_name = c2.text_input("Material name")
    with c3:
        if st.button("Add"):
            try:
                orders.add_material(store, settings, new_id, new_name)
                orders.sync_ledger_columns(store, settings)
                st.success("Material added")
                st.rerun()
            except (ValueError, logic.StockError) as e:
                st.error(str(e))

    st.subheader("Rename material")
    if catalog.materials:
        r1, r2, r3 = st.columns([2, 4, 2])
        pick = r1.selectbox("Material", catalog.ids)
        renamed = r2.text_input("New name", value=catalog.names.get(pick, ""))
        with r3:
            if st.button("Rename"):
                orders.rename_material(store, settings, pick, renamed)
                st.success("Renamed")
                st.rerun()

    st.divider()
    st.subheader("Import materials (CSV / XLSX)")
    st.caption("Required columns (any case): material_id, material_name")
    up = st.file_uploader("Upload file", type=["csv", "xlsx"], key="mat_upload")

    if up is not None:
        try:
            df = _read_any_file(up)
            df.columns = df.columns.str.strip().str.lower()
            if "material_id" not in df.columns or "material_name" not in df.columns:
                st.error("Your file must contain columns: material_id, material_name")
            else:
                df["material_id"] = df["material_id"].astype(str).str.strip()
                df["material_name"] = df["material_name"].astype(str).str.strip()
                st.dataframe(df, use_container_width=True)

                if st.button("Import into catalog", type="primary"):
                    added, skipped = 0, 0
                    for _, r in df.iterrows():
                        try:
                            orders.add_material(store, settings, r["material_id"], r["material_name"])
                            added += 1
                        except ValueError:
                            skipped += 1
                    orders.sync_ledger_columns(store, settings)
                    st.success(f"Imported: {added} | Skipped: {skipped}")
        except ValueError as e:
            st.error(f"Import failed: {e}")

# =================================================
# PURCHASES
# =================================================
elif page == "Purchases":
    st.header("Purchase Orders")

    if not catalog:
        st.warning("Add materials first.")
    else:
        st.subheader("New purchase order")
        c1, c2, c3 = st.columns(3)
        supplier = c1.text_input("Supplier", key="po_supplier")
        invoice_no = c2.text_input("Invoice no", key="po_invoice")
        amount = c3.number_input("Amount", min_value=0.0, value=0.0, step=1.0, key="po_amount")
        despatch = _optional_date("Despatch date", "po_despatch")
        document = st.text_input("Document link", key="po_doc")
        quantities = _quantity_inputs(catalog, "po_qty")

        if st.button("Submit purchase order", type="primary"):
            try:
                po_id = orders.submit_purchase(
                    store, settings, supplier, quantities,
                    despatch_date=despatch, invoice_no=invoice_no.strip(),
                    amount=amount or None, document=document.strip(),
                )
                st.success(f"Recorded {po_id}")
            except (ValueError, logic.StockError) as e:
                st.error(str(e))

        st.divider()
        st.subheader("Update purchase order")
        u1, u2 = st.columns(2)
        po_id = u1.text_input("PO ID", key="po_upd_id").strip()
        new_despatch = u2.date_input("Despatch date", key="po_upd_date")
        if st.button("Set despatch date"):
            try:
                orders.update_order(store, settings, "purchases", po_id, despatch_date=new_despatch)
                st.success("Updated")
            except (KeyError, ValueError, logic.StockError) as e:
                st.error(str(e))

    st.divider()
    st.dataframe(orders.ledger_frame(store, settings.purchases), use_container_width=True)

# =================================================
# SALES
# =================================================
elif page == "Sales":
    st.header("Sales Orders")

    if not catalog:
        st.warning("Add materials first.")
    else:
        st.subheader("New sales order")
        c1, c2 = st.columns(2)
        customer = c1.text_input("Customer", key="so_customer")
        amount = c2.number_input("Amount", min_value=0.0, value=0.0, step=1.0, key="so_amount")
        appointment = _optional_date("Appointment date", "so_appt")
        document = st.text_input("Document link", key="so_doc")
        quantities = _quantity_inputs(catalog, "so_qty")

        if st.button("Submit sales order", type="primary"):
            try:
                so_id = orders.submit_sale(
                    store, settings, customer, quantities,
                    appointment_date=appointment, amount=amount or None,
                    document=document.strip(),
                )
                st.success(f"Recorded {so_id}")
            except (ValueError, logic.StockError) as e:
                st.error(str(e))

        st.divider()
        st.subheader("Record dispatch")
        so_id = st.text_input("SO ID", key="so_disp_id").strip()
        dispatched = _quantity_inputs(catalog, "so_disp")
        if st.button("Save dispatched quantities"):
            try:
                orders.record_dispatch(store, settings, so_id, dispatched)
                st.success("Dispatch recorded")
            except (KeyError, ValueError, logic.StockError) as e:
                st.error(str(e))

        with st.expander("Ordered but not dispatched"):
            try:
                totals = logic.accumulate_ledger(store.read_table(settings.sales.sheet), settings.sales, date.today())
                gap = logic.undispatched(totals)
                st.dataframe(
                    pd.DataFrame([{"material_id": k, "undispatched": v} for k, v in gap.items() if v]),
                    use_container_width=True,
                )
            except logic.StockError as e:
                st.error(e.message)

    st.divider()
    st.dataframe(orders.ledger_frame(store, settings.sales), use_container_width=True)

# =================================================
# MANUAL STOCK
# =================================================
elif page == "Manual Stock":
    st.header("Manual Stock Snapshot")
    st.caption("A snapshot replaces the previous one. Materials left at 0 read as 0.")

    if not catalog:
        st.warning("Add materials first.")
    else:
        quantities = _quantity_inputs(catalog, "man_qty")
        note = st.text_input("Note (optional)", "")
        if st.button("Record snapshot", type="primary"):
            try:
                entry_id = orders.submit_manual(store, settings, quantities, note=note.strip())
                st.success(f"Recorded {entry_id}")
            except (ValueError, logic.StockError) as e:
                st.error(str(e))

    st.divider()
    st.dataframe(orders.ledger_frame(store, settings.manual), use_container_width=True)

# =================================================
# STOCK SUMMARY
# =================================================
elif page == "Stock Summary":
    st.title("Stock Summary")

    if st.button("Refresh stock", type="primary"):
        result = logic.compute_and_refresh_stock(store, settings)
        if result.ok:
            st.success(f"Stock refreshed for {len(result.rows)} materials ✅")
        elif result.sink_failed:
            st.warning(f"{result.error.message}")
        else:
            st.error(result.error.message)
        st.session_state.stock_rows = result.rows

    rows = st.session_state.get("stock_rows")
    if rows:
        df = logic.summary_frame(rows)
        search = st.text_input("Search (id or name)", "").strip().lower()
        if search:
            df = df[
                df["id"].astype(str).str.lower().str.contains(search)
                | df["name"].astype(str).str.lower().str.contains(search)
            ]
        st.dataframe(df, use_container_width=True)

        with st.expander("Negative net stock"):
            bad = df[df["net"] < 0]
            if bad.empty:
                st.success("No negative stock found ✅")
            else:
                st.error("Negative stock found ❌")
                st.dataframe(bad, use_container_width=True)

        if st.button("Email stock report"):
            if notify.send_stock_report(rows, settings):
                st.success("Report sent")
            else:
                st.warning("Report not sent (check SMTP settings and recipients)")
    else:
        st.info("Press Refresh stock to compute current stock.")

# =================================================
# EXPORTS
# =================================================
elif page == "Exports":
    st.header("Exports")

    st.subheader("Stock summary")
    # read-only: the summary sheet is only rewritten by "Refresh stock"
    try:
        stock_rows = logic.compute_stock(store, settings)
    except logic.StockError as e:
        st.error(e.message)
        stock_rows = []
    df_stock = logic.summary_frame(stock_rows)
    st.dataframe(df_stock, use_container_width=True)
    st.download_button(
        "Download stock_summary.csv",
        data=df_stock.to_csv(index=False).encode("utf-8"),
        file_name="stock_summary.csv",
        mime="text/csv",
    )

    for layout in settings.ledgers:
        st.subheader(layout.sheet)
        df_led = orders.ledger_frame(store, layout)
        st.dataframe(df_led, use_container_width=True)
        st.download_button(
            f"Download {layout.sheet.lower()}.csv",
            data=df_led.to_csv(index=False).encode("utf-8"),
            file_name=f"{layout.sheet.lower()}.csv",
            mime="text/csv",
        )
