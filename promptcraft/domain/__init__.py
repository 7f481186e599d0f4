"""领域层模型与协议。

包含：
- models: Provider 侧统一的 ChatMessage / ChatRequest / ChatResult 模型。
- conversation: 会话与消息的存储模型及 ConversationStore 抽象。
- session: 会话控制器的本地状态与提交结果。
- exceptions: 业务异常类型与错误分类。
"""
