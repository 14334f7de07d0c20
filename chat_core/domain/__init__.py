"""领域层模型与协议。

包含：
- models: Conversation / Message / ChatRequest / StreamEvent 等数据结构。
- conversation: PersistenceGateway 抽象。
- store: 会话状态机 ConversationStore。
- scheduling: 防抖写入所需的调度抽象。
- exceptions: 业务异常类型定义。
"""
