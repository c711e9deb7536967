"""
Moony SMS
=========

Conversational SMS budgeting on AWS Lambda: inbound budget commands over
SNS (AWS End User Messaging) or Twilio webhooks, spending goals in DynamoDB,
and a scheduled daily spending target.
"""

__version__ = "1.0.0"
