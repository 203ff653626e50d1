"""Prompt templates used by the pipeline stages."""

REWRITE_SYSTEM_PROMPT = (
    "You are a search query optimization expert. Your task is to rewrite search queries "
    "to make them more effective for semantic search. Return ONLY the rewritten query "
    "without explanation or additional text."
)

REWRITE_USER_PROMPT = (
    'Original query: "{query}"\n\n'
    "Rewrite this query to be more effective for semantic search in a personal knowledge base. "
    "Add relevant keywords and context. Return ONLY the rewritten query, without any explanation."
)

HYDE_SYSTEM_PROMPT = (
    "Generate a detailed, factual passage that directly answers the user's question. "
    "Write as if you're a knowledgeable expert providing an ideal answer based on verified "
    "information. Include specific details, examples, and explanations. DO NOT include phrases "
    'like "As an AI" or "According to my knowledge". Write in a natural, informative style.'
)

HYDE_BRIEF_PROMPT = "Answer the following question briefly and factually:\n\n{query}"

HYDE_PLACEHOLDER = (
    'This passage discusses "{query}" and contains information relevant to answering '
    "that question, including the key facts, definitions and details involved."
)

CRITIQUE_PROMPT = """Your task is to evaluate the quality of the following answer and identify any missing information or gaps in the answer.

Original question:
{query}

Current answer:
{answer}

Please think:
1. What specific information is missing from the answer?
2. Are there any related but unaddressed aspects?
3. Which assertions in the answer lack sufficient evidence?
4. Are there any areas that need clarification?

Identify 3-5 specific points in the answer that need more information and list specific queries to search for."""

EXTRACT_QUERIES_PROMPT = """Extract specific queries from the following reflection text. Please list 3-5 queries in short, direct questions or phrases, one per line, without numbering:

{reflection}

Queries:"""

REVISION_SYSTEM_PROMPT = (
    "You are a knowledge base Q&A assistant. You need to improve the previous answer, "
    "addressing issues identified in the reflection and utilizing newly provided information."
)

REVISION_PROMPT = """Please improve the answer below, addressing issues identified in the reflection and utilizing newly provided information.

Original question:
{query}

Current answer:
{answer}

Reflection feedback:
{reflection}

New information:
{additional_context}

Please generate an improved, more comprehensive answer while maintaining the strengths of the original answer. The answer should be direct, authoritative, and cite sources. Do not add any meta-descriptions or preamble. Start your answer directly without repeating the question."""

_ANSWER_INSTRUCTIONS = """Instructions:
1. Provide a direct, comprehensive answer to the question based on the provided documents
2. If different documents contain conflicting information, note the differences and explain pros and cons
3. When using information from a specific document, cite it as [Source X] in your answer
4. If the provided documents don't fully answer the question, clearly indicate what information is missing
5. Format code blocks, lists, and any structured content appropriately
6. Highlight key points using markdown formatting for readability
7. DO NOT summarize the documents - instead, directly answer the question
8. Keep your answer focused and concise"""

ANSWER_PROMPT_EN = (
    """Please answer the following question in English:

QUESTION: "{question}"

Below are document sections that may contain relevant information:

{context}

"""
    + _ANSWER_INSTRUCTIONS
)

ANSWER_PROMPT_ZH = """请用中文回答以下问题：

问题："{question}"

以下是可能包含相关信息的文档片段：

{context}

要求：
1. 基于提供的文档，直接、全面地回答问题
2. 如果不同文档的信息存在冲突，请指出差异并说明各自的优缺点
3. 引用某个文档的信息时，请在回答中以 [Source X] 的形式标注
4. 如果提供的文档不能完全回答问题，请明确指出缺少哪些信息
5. 代码块、列表等结构化内容请使用合适的格式
6. 使用 markdown 格式突出重点，便于阅读
7. 不要总结文档，而是直接回答问题
8. 回答要聚焦、简洁"""

HYPOTHETICAL_CONTEXT_HEADER = "\n\nHypothetical answer based on the query:\n"

ENHANCING_NOTICE = "\n\n_Enhancing with knowledge base..._"
FOUND_NOTICE = "\n\n_Found relevant information, enhancing answer..._"
FOUND_MORE_NOTICE = "\n\n_Found more relevant information, enhancing answer..._"
REFLECTION_ERROR_NOTICE = "\n\n_Error occurred during reflection, returning current answer_"
