from urllib.parse import urlencode

from twilio.twiml.voice_response import VoiceResponse

VOICE = 'Polly.Mizuki'
LANGUAGE = 'ja-JP'

REPLIES = {
    '1': [
        'ありがとうございます。体調に気をつけて、水分補給を忘れずにお過ごしください。',
        'それでは失礼いたします。',
    ],
    '2': [
        'お疲れのようですね。涼しい場所で休憩し、水分と塩分を取ってください。',
        'ご家族にも連絡いたします。お大事になさってください。',
    ],
    '3': [
        'すぐにご家族と近隣の方に連絡いたします。',
        '安静にしてお待ちください。もし緊急の場合は、119番へお電話ください。',
    ],
}

NO_INPUT = [
    '入力が確認できませんでした。',
    '後ほど再度お電話させていただきます。',
]


def _say(target, text: str) -> None:
    target.say(text, voice=VOICE, language=LANGUAGE)


def prompt_twiml(name: str, alert_id: str, attempt: str, gather_path: str = '/webhooks/twilio/gather') -> str:
    """IVR prompt asking the household to press 1, 2 or 3"""
    response = VoiceResponse()
    action = f"{gather_path}?{urlencode({'alertId': alert_id or '', 'attempt': attempt})}"
    gather = response.gather(num_digits=1, timeout=10, action=action, method='POST', language=LANGUAGE)
    _say(gather, (
        f"こんにちは、{name}様。熱中症予防の確認です。"
        "本日は暑さが厳しくなっています。体調はいかがですか？"
        "大丈夫でしたら、1を押してください。"
        "少し疲れている場合は、2を押してください。"
        "助けが必要な場合は、3を押してください。"
    ))
    _say(response, '入力が確認できませんでした。後ほど再度お電話いたします。')
    return str(response)


def reply_twiml(digits: str) -> str:
    response = VoiceResponse()
    for line in REPLIES.get(digits, NO_INPUT):
        response.pause(length=1)
        _say(response, line)
    return str(response)
