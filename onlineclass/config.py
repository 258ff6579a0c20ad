import os
from dotenv import load_dotenv

# 加载环境变量
load_dotenv()
# 配置项
DATABASE_URL = os.environ.get('DATABASE_URL', 'sqlite:///./onlineclass.db')
FRONT_URL = os.environ.get('FRONT_URL', 'http://localhost:3000')
UPLOAD_DIR = os.environ.get('UPLOAD_DIR', 'uploads')
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

# 令牌
SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-change-me')
TOKEN_ALGORITHM = 'HS256'
TOKEN_EXPIRE_MINUTES = int(os.environ.get('TOKEN_EXPIRE_MINUTES', '720'))

# 业务参数
MAX_UPLOAD_SIZE = int(os.environ.get('MAX_UPLOAD_SIZE', str(50 * 1024 * 1024)))
INVITATION_TTL_DAYS = int(os.environ.get('INVITATION_TTL_DAYS', '30'))
CHAT_HISTORY_LIMIT = int(os.environ.get('CHAT_HISTORY_LIMIT', '100'))
