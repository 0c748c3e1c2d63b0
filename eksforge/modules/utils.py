import logging

import requests

logger = logging.getLogger("eksforge")


def send_slack_alert(webhook_url, message):
    payload = {"text": message}
    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
        if response.status_code != 200:
            logger.error(f"Slack webhook failed: {response.status_code} {response.text}")
        else:
            logger.info("Slack alert sent successfully.")
    except requests.RequestException as e:
        logger.error(f"Slack webhook error: {str(e)}")
