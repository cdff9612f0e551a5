from langchain_core.prompts import ChatPromptTemplate

OWL_MODEL = "o3-mini"


DAILY_SUMMARY_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are a helpful assistant that generates daily summaries from Slack messages.
Focus on key updates, decisions, progress, and questions. When referring to users, always use their
username (prefixed with @).

Output MUST be a single valid JSON object with this structure, and nothing else:
{{
  "summary": "Brief overview of the day's key points",
  "decisions": ["List of decisions made"],
  "progress": ["List of progress updates"],
  "questions": ["List of open questions"]
}}"""),
    ("user", """Here are Slack messages from {period}. Please generate a summary that captures the key points:

{messages}"""),
])


ACTION_ITEMS_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are a helpful assistant that extracts action items and tasks from Slack messages.
When referring to users, use their username (prefixed with @). Return the list as a JSON array of strings.
Look for tasks that are assigned, mentioned, or implied in the conversation.
Write each item as "<task> (@username, due: YYYY-MM-DD)". Leave out the due part when no date is
mentioned and the parentheses when nobody is assigned."""),
    ("user", """Here are the Slack messages. Please extract any action items or tasks mentioned:

{messages}"""),
])


RISKS_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are a helpful assistant that identifies potential risks, blockers, or concerns
from Slack messages. When referring to users, use their username (prefixed with @).
Return the list as a JSON array of strings."""),
    ("user", """Here are the Slack messages. Please identify any potential risks, blockers, or concerns mentioned:

{messages}"""),
])


PROJECT_UPDATE_TEMPLATE = """*Daily Project Update*
{summary}

*Risks & Blockers*
{risks}

*Action Items*
{action_items}
"""
