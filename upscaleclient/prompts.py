SYSTEM_PROMPT = "You are a professional image restoration expert."

USER_PROMPT = (
    "Redraw this page as a sharp, high-resolution image. Keep the layout, "
    "wording, colors and every visual element exactly where they are. Render "
    "all text crisply and legibly without changing, translating or adding any "
    "words. Remove compression artifacts, blur and noise. Do not add "
    "watermarks, borders or new content."
)
