# run_server.py
import uvicorn

from script_variables.utils import config

if __name__ == "__main__":
    print("正在启动剧本变量宏系统服务器...")
    print("请确保已安装依赖: pip install -e .")
    print(f"访问地址: http://localhost:{config.SERVER_PORT}")
    print(f"API文档地址 (Swagger UI): http://localhost:{config.SERVER_PORT}/docs")

    # "script_variables.api.variable_server:app" 指向 script_variables/api/variable_server.py 文件中的 app 实例
    # reload=True 使得代码修改后服务器会自动重启，方便开发调试
    try:
        uvicorn.run("script_variables.api.variable_server:app", host=config.SERVER_HOST, port=config.SERVER_PORT, reload=True)
    except Exception as e:
        print(f"\n启动服务器时发生错误: {e}")
