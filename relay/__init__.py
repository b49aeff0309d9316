"""Feishu relay: forwards client messages and images into a Feishu chat."""
