"""Prompt templates for repository analysis and chat.

Kept neutral: the model reports what it sees, scores are passed through as
returned.
"""

ANALYSIS_SYSTEM_PROMPT = (
    "You are a senior software architect reviewing a GitHub repository. "
    "Give a balanced assessment grounded only in the files and structure provided. "
    "Respond with a single JSON object."
)

ANALYSIS_FORMAT = """Return JSON with exactly these fields:
{
  "codeQuality": <0-100>,
  "rugPotential": <0-100 risk score>,
  "aiGenerated": <0-100 estimated percentage>,
  "sustainability": {
    "longTerm": "<assessment>",
    "maintainability": "<assessment>",
    "scalability": "<assessment>"
  },
  "summary": "<concise summary>"
}"""

CODE_CHAT_SYSTEM_PROMPT = (
    "You are a code analyst for the repository described below. The file content "
    "is already in your context; answer directly and reference specific parts of it."
)

CONCEPT_CHAT_SYSTEM_PROMPT = (
    "You are a project analyst for the repository described below. Answer questions "
    "about purpose, risk, maintenance and overall quality from the context provided."
)

# Keyword routing: code questions go to Claude, project-level questions to ChatGPT
CODE_KEYWORDS = (
    "code", "function", "class", "variable", "method", "syntax", "error",
    "bug", "debug", "implement", "refactor", "optimize", "algorithm",
    "loop", "condition", "return", "import", "export", "const", "let",
    "async", "await", "promise", "callback", "api call", "endpoint",
    "how does this work", "explain this code", "what does this do",
    "how to fix", "why is this", "how can i", "show me the code",
)

CONCEPT_KEYWORDS = (
    "rug pull", "scam", "security", "risk", "trust", "safe", "legitimate",
    "utility", "purpose", "what is this project", "what does this project",
    "project about", "use case", "business", "tokenomics", "roadmap",
    "team", "whitepaper", "documentation", "overview", "summary",
    "good investment", "worth it", "quality", "reputation", "community",
    "active development", "maintained", "updates", "sustainability",
)

MAX_FILES_IN_PROMPT = 5
MAX_FILE_CHARS = 1000
MAX_CHAT_FILE_CHARS = 12000
MAX_TREE_ENTRIES = 200
