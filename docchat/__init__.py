"""DocChat: chat with your PDFs and web pages using a local LLM."""
