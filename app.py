import logging

import streamlit as st

from batch import BatchSource, BatchStatus, run_batch, screen_sources
from exporter import encode_png, export_filename, export_items
from label_processor import draw_detection_preview
from raster_source import load_first_page
from schemas import MARKETPLACE_PROFILES, Marketplace, TargetSpec

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

st.set_page_config(
    page_title="Shipping Label Crop",
    page_icon="📦",
    layout="wide"
)

if 'results' not in st.session_state:
    st.session_state.results = []
if 'rejected' not in st.session_state:
    st.session_state.rejected = []
if 'pdf_bytes' not in st.session_state:
    st.session_state.pdf_bytes = None

marketplace = st.selectbox(
    "Marketplace",
    options=list(Marketplace),
    format_func=lambda m: MARKETPLACE_PROFILES[m].title,
)
profile = MARKETPLACE_PROFILES[marketplace]
target = TargetSpec.for_marketplace(marketplace)

st.title(profile.title)
st.markdown(f"{profile.note} Exports at {target.dpi} DPI, "
            f"{profile.width_mm:g}×{profile.height_mm:g} mm.")

uploaded_files = st.file_uploader(
    "Upload labels",
    type=['pdf', 'png', 'jpg', 'jpeg', 'tif', 'tiff'],
    accept_multiple_files=True,
    help="Only the first page of each document is used"
)

col1, col2 = st.columns([1, 3])
with col1:
    process_button = st.button(
        "Detect & Crop",
        disabled=not uploaded_files,
        use_container_width=True,
        type="primary"
    )
with col2:
    if st.button("Reset"):
        st.session_state.results = []
        st.session_state.rejected = []
        st.session_state.pdf_bytes = None
        st.rerun()

if process_button and uploaded_files:
    sources = [BatchSource(source_id=f.name, data=f.getvalue()) for f in uploaded_files]
    accepted, rejected = screen_sources(sources)
    st.session_state.rejected = rejected

    progress_bar = st.progress(0)
    status_text = st.empty()
    results = []
    for update in run_batch(accepted, marketplace, target=target):
        progress_bar.progress(update.index / update.total)
        status_text.text(f"Processed {update.index} of {update.total}: {update.item.source_id}")
        results.append(update.item)
    progress_bar.empty()
    status_text.empty()
    pdf_bytes, results = export_items(results, target)
    st.session_state.results = results
    st.session_state.pdf_bytes = pdf_bytes

for message in st.session_state.rejected:
    st.warning(f"Skipped {message}")

results = st.session_state.results
done = [r for r in results if r.status is BatchStatus.DONE]
failed = [r for r in results if r.status is BatchStatus.FAILED]

if failed:
    for item in failed:
        st.error(f"{item.source_id}: {item.error}")

if done:
    st.markdown("---")
    st.success(f"{len(done)} label(s) ready, {len(failed)} failed")

    if st.session_state.pdf_bytes is not None:
        st.download_button(
            label="Download PDF" if len(done) == 1 else "Download merged PDF",
            data=st.session_state.pdf_bytes,
            file_name=export_filename(marketplace, [r.source_id for r in done]),
            mime="application/pdf",
            use_container_width=True
        )

    names = [r.source_id for r in done]
    selected = st.selectbox("Preview", options=range(len(done)), format_func=lambda i: names[i])
    item = done[selected]

    tab1, tab2 = st.tabs(["Label", "Detection"])
    with tab1:
        st.image(item.canvas.buffer.pixels, use_container_width=True)
        st.download_button(
            label="Download PNG",
            data=encode_png(item.canvas),
            file_name=f"{marketplace.value}-{item.source_id.rsplit('.', 1)[0]}-label.png",
            mime="image/png",
        )
    with tab2:
        source = next((f for f in uploaded_files or [] if f.name == item.source_id), None)
        if source is not None:
            raster = load_first_page(source.getvalue(), source.name)
            st.image(draw_detection_preview(raster, item.bounds), use_container_width=True)
        crop = item.canvas.crop
        if crop.used_crop:
            st.info(f"Crop: position ({crop.x}, {crop.y}) | size {crop.width}×{crop.height}px | "
                    f"{crop.area_fraction:.1%} of page")
        else:
            st.info("No usable label region found, the full page was used")

st.markdown("---")
st.markdown(
    "<div style='text-align: center; color: #666;'>"
    "Shipping Label Crop | Built with Streamlit & OpenCV"
    "</div>",
    unsafe_allow_html=True
)
