"""工具执行协作方：工具定义与 MCP 客户端。"""
